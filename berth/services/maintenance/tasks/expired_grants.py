"""ExpiredGrantSweepTask - scheduled expiry of SSH grants."""

from __future__ import annotations

from typing import TYPE_CHECKING

from berth.managers.access import AccessBroker
from berth.services.maintenance.base import MaintenanceTask, TaskResult

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from berth.drivers.base import ClusterDriver


class ExpiredGrantSweepTask(MaintenanceTask):
    """Expire Active grants past expires_at and remove their services."""

    def __init__(self, driver: "ClusterDriver", db_session: "AsyncSession") -> None:
        self._broker = AccessBroker(driver, db_session)

    @property
    def name(self) -> str:
        return "expired_grants"

    async def run(self) -> TaskResult:
        summary = await self._broker.sweep_expired()

        result = TaskResult(
            task_name=self.name,
            processed_count=summary["expired"],
            updated_count=summary["expired"],
        )
        if summary["errors"]:
            result.add_error(f"{summary['errors']} service teardown(s) failed")
        return result
