"""Cluster driver base class - infrastructure abstraction.

The driver is responsible ONLY for talking to the cluster API.
It does NOT handle:
- Authorization
- Retry/circuit-breaker
- Bookkeeping records
- Deciding which failures are fatal

Error contract:
- "already exists" on create is success (logged)
- "not found" on delete is success (logged)
- every other platform/connectivity failure is raised as
  InfrastructureTransientError; callers decide severity
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class WorkloadObservation(str, Enum):
    """What a workload query established.

    UNREACHABLE is kept apart from ABSENT so a cluster outage is never
    mistaken for a deleted workload.
    """

    FOUND = "found"
    ABSENT = "absent"  # Confirmed 404
    UNREACHABLE = "unreachable"


@dataclass
class WorkloadInfo:
    """Workload (pod) information from driver."""

    name: str
    namespace: str
    observation: WorkloadObservation
    phase: str | None = None  # Pending | Running | Succeeded | Failed | Unknown
    container_ports: list[int] = field(default_factory=list)
    pod_ip: str | None = None
    exit_code: int | None = None
    error: str | None = None  # Set when UNREACHABLE

    def exposes(self, port: int) -> bool:
        return port in self.container_ports


@dataclass
class WorkloadSpec:
    """Everything needed to submit one sandbox pod."""

    name: str
    namespace: str
    image: str
    container_name: str = "main-container"
    labels: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    ports: list[int] = field(default_factory=list)
    cpu_request: str = "100m"
    memory_request: str = "256Mi"
    cpu_limit: str = "500m"
    memory_limit: str = "512Mi"
    restart_policy: str = "Always"
    image_pull_policy: str = "IfNotPresent"


@dataclass
class ServiceSpec:
    """NodePort service exposing one container port."""

    name: str
    namespace: str
    selector: dict[str, str]
    port: int
    target_port: int
    node_port: int | None = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyRule:
    """Namespace-scoped RBAC rule."""

    api_groups: tuple[str, ...]
    resources: tuple[str, ...]
    verbs: tuple[str, ...]


class ClusterDriver(ABC):
    """Abstract cluster driver interface.

    All methods are namespace-scoped except the namespace methods themselves.
    """

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying API client."""
        ...

    # Namespace boundary

    @abstractmethod
    async def namespace_exists(self, name: str) -> bool:
        """Direct cluster lookup.

        Raises:
            InfrastructureTransientError: if the cluster cannot answer
        """
        ...

    @abstractmethod
    async def create_namespace(self, name: str, labels: dict[str, str]) -> None:
        """Create a namespace. Existing namespace is success."""
        ...

    @abstractmethod
    async def delete_namespace(self, name: str) -> None:
        """Delete a namespace and everything inside it. Missing is success."""
        ...

    @abstractmethod
    async def create_service_account(
        self, namespace: str, name: str, labels: dict[str, str]
    ) -> None:
        ...

    @abstractmethod
    async def create_role(
        self,
        namespace: str,
        name: str,
        rules: list[PolicyRule],
        labels: dict[str, str],
    ) -> None:
        ...

    @abstractmethod
    async def create_role_binding(
        self,
        namespace: str,
        name: str,
        *,
        role_name: str,
        service_account: str,
        labels: dict[str, str],
    ) -> None:
        ...

    @abstractmethod
    async def create_resource_quota(
        self,
        namespace: str,
        name: str,
        hard: dict[str, str],
        labels: dict[str, str],
    ) -> None:
        ...

    @abstractmethod
    async def create_network_policy(
        self, namespace: str, name: str, labels: dict[str, str]
    ) -> None:
        """Ingress only from the same namespace, all egress allowed."""
        ...

    # Workloads

    @abstractmethod
    async def create_workload(self, spec: WorkloadSpec) -> str:
        """Submit a pod without waiting for it to start.

        Returns:
            Pod name (workload_ref)
        """
        ...

    @abstractmethod
    async def get_workload(self, namespace: str, name: str) -> WorkloadInfo:
        """Observe a pod. Never raises for a missing pod or an outage."""
        ...

    @abstractmethod
    async def delete_workload(self, namespace: str, name: str) -> None:
        ...

    @abstractmethod
    async def workload_logs(
        self, namespace: str, name: str, *, container: str, tail: int = 100
    ) -> str:
        ...

    @abstractmethod
    async def exec_in_workload(
        self, namespace: str, name: str, *, container: str, command: list[str]
    ) -> str:
        """Run a command in a container and return its combined output."""
        ...

    # Services

    @abstractmethod
    async def create_service(self, spec: ServiceSpec) -> None:
        ...

    @abstractmethod
    async def delete_service(self, namespace: str, name: str) -> None:
        ...
