"""SQLModel data models."""

from berth.models.connection import ConnectionStatus, SshConnection
from berth.models.instance import ContainerInstance, InstanceStatus
from berth.models.tenant import NamespaceState, TenantNamespace

__all__ = [
    "ConnectionStatus",
    "ContainerInstance",
    "InstanceStatus",
    "NamespaceState",
    "SshConnection",
    "TenantNamespace",
]
