"""Manager layer - business logic."""

from berth.managers.access import AccessBroker
from berth.managers.instance import InstanceManager
from berth.managers.namespace import NamespaceProvisioner

__all__ = ["AccessBroker", "InstanceManager", "NamespaceProvisioner"]
