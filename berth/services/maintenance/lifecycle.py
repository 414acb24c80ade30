"""Maintenance lifecycle management for FastAPI lifespan integration."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from berth.config import get_settings
from berth.db.session import get_async_session
from berth.services.maintenance.base import MaintenanceTask, TaskResult
from berth.services.maintenance.scheduler import MaintenanceScheduler
from berth.services.maintenance.tasks import ExpiredGrantSweepTask, ReconcileInstancesTask

if TYPE_CHECKING:
    from berth.config import MaintenanceConfig
    from berth.drivers.base import ClusterDriver

logger = structlog.get_logger()

# Global scheduler instance
_scheduler: MaintenanceScheduler | None = None


class SessionPerCycleScheduler(MaintenanceScheduler):
    """Scheduler that builds its tasks on a fresh db session every cycle."""

    def __init__(self, config: "MaintenanceConfig", driver: "ClusterDriver") -> None:
        super().__init__(tasks=[], config=config)
        self._driver = driver

    def _build_tasks(self, db_session) -> list[MaintenanceTask]:
        tasks: list[MaintenanceTask] = []
        if self._config.reconcile_instances.enabled:
            tasks.append(ReconcileInstancesTask(self._driver, db_session))
        if self._config.expired_grants.enabled:
            tasks.append(ExpiredGrantSweepTask(self._driver, db_session))
        return tasks

    async def _run_cycle(self) -> list[TaskResult]:
        self._log.info("maintenance.cycle.start")

        results: list[TaskResult] = []
        async with get_async_session() as db_session:
            for task in self._build_tasks(db_session):
                results.append(await self._run_task(task))

        self._log_cycle(results)
        return results


async def init_maintenance_scheduler(driver: "ClusterDriver") -> MaintenanceScheduler:
    """Create the scheduler and start its loop when enabled.

    The scheduler is always created so the admin API can trigger a cycle,
    but the background loop only starts if maintenance.enabled=true.
    """
    global _scheduler

    config = get_settings().maintenance

    logger.info(
        "maintenance.init",
        enabled=config.enabled,
        interval_seconds=config.interval_seconds,
        jitter_seconds=config.jitter_seconds,
        run_on_startup=config.run_on_startup,
        tasks={
            "reconcile_instances": config.reconcile_instances.enabled,
            "expired_grants": config.expired_grants.enabled,
        },
    )

    _scheduler = SessionPerCycleScheduler(config=config, driver=driver)

    if not config.enabled:
        logger.info("maintenance.background_disabled", reason="maintenance.enabled=false")
        return _scheduler

    if config.run_on_startup:
        try:
            results = await _scheduler.run_once()
            logger.info(
                "maintenance.run_on_startup.complete",
                updated=sum(r.updated_count for r in results),
                errors=sum(len(r.errors) for r in results),
            )
        except Exception as e:
            logger.exception("maintenance.run_on_startup.failed", error=str(e))

    await _scheduler.start()
    return _scheduler


async def shutdown_maintenance_scheduler() -> None:
    """Stop the scheduler. Called during FastAPI lifespan shutdown."""
    global _scheduler

    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None


def get_maintenance_scheduler() -> MaintenanceScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler
