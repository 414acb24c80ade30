from berth.managers.access.access import AccessBroker

__all__ = ["AccessBroker"]
