"""Driver layer - infrastructure abstraction."""

from berth.drivers.base import (
    ClusterDriver,
    PolicyRule,
    ServiceSpec,
    WorkloadInfo,
    WorkloadObservation,
    WorkloadSpec,
)
from berth.drivers.k8s import K8sDriver

__all__ = [
    "ClusterDriver",
    "K8sDriver",
    "PolicyRule",
    "ServiceSpec",
    "WorkloadInfo",
    "WorkloadObservation",
    "WorkloadSpec",
]
