"""ReconcileInstancesTask - scheduled reconcile-all."""

from __future__ import annotations

from typing import TYPE_CHECKING

from berth.managers.instance import InstanceManager
from berth.services.maintenance.base import MaintenanceTask, TaskResult

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from berth.drivers.base import ClusterDriver


class ReconcileInstancesTask(MaintenanceTask):
    """Refresh every non-Deleted instance's status from the cluster."""

    def __init__(self, driver: "ClusterDriver", db_session: "AsyncSession") -> None:
        self._manager = InstanceManager(driver, db_session)

    @property
    def name(self) -> str:
        return "reconcile_instances"

    async def run(self) -> TaskResult:
        summary = await self._manager.reconcile_all()

        result = TaskResult(
            task_name=self.name,
            processed_count=summary["total"],
            updated_count=summary["updated"],
        )
        if summary["errors"]:
            result.add_error(f"{summary['errors']} instance(s) failed to reconcile")
        return result
