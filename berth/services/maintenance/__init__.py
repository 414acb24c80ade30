"""Scheduled maintenance for Berth.

Runs the same operations the admin API exposes, on an interval:
- Instance reconciliation (ReconcileInstancesTask)
- Expired grant sweep (ExpiredGrantSweepTask)

Disabled by default; see ``maintenance`` in configuration.
"""

from berth.services.maintenance.base import MaintenanceTask, TaskResult
from berth.services.maintenance.scheduler import MaintenanceScheduler

__all__ = [
    "MaintenanceScheduler",
    "MaintenanceTask",
    "TaskResult",
]
