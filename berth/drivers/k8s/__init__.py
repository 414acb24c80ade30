"""Kubernetes driver."""

from berth.drivers.k8s.k8s import K8sDriver

__all__ = ["K8sDriver"]
