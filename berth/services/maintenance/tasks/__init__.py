"""Maintenance tasks."""

from berth.services.maintenance.tasks.expired_grants import ExpiredGrantSweepTask
from berth.services.maintenance.tasks.reconcile_instances import ReconcileInstancesTask

__all__ = [
    "ExpiredGrantSweepTask",
    "ReconcileInstancesTask",
]
