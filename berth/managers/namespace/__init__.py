from berth.managers.namespace.namespace import PROTECTED_NAMESPACES, NamespaceProvisioner

__all__ = ["PROTECTED_NAMESPACES", "NamespaceProvisioner"]
