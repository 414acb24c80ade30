from berth.managers.instance.instance import NO_LOGS_PLACEHOLDER, InstanceManager

__all__ = ["NO_LOGS_PLACEHOLDER", "InstanceManager"]
