"""Maintenance scheduler - runs reconciliation tasks on an interval."""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING

import structlog

from berth.services.maintenance.base import MaintenanceTask, TaskResult

if TYPE_CHECKING:
    from berth.config import MaintenanceConfig

logger = structlog.get_logger()


class MaintenanceScheduler:
    """Scheduler for maintenance tasks.

    - Executes tasks serially in the given order
    - A failing task never stops the cycle or the loop
    - Manual ``run_once`` and the background loop never overlap

    Usage:
        scheduler = MaintenanceScheduler(tasks=[...], config=settings.maintenance)
        await scheduler.run_once()
        await scheduler.start()
        await scheduler.stop()
    """

    def __init__(
        self,
        tasks: list[MaintenanceTask],
        config: "MaintenanceConfig",
    ) -> None:
        self._tasks = tasks
        self._config = config
        self._log = logger.bind(service="maintenance_scheduler")

        self._running = False
        self._task: asyncio.Task | None = None

        self._run_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        """Whether the background loop is running."""
        return self._running

    @property
    def is_busy(self) -> bool:
        """Whether a cycle is in progress."""
        return self._run_lock.locked()

    def next_delay(self) -> float:
        """Seconds until the next cycle: interval plus random jitter."""
        jitter = self._config.jitter_seconds
        return self._config.interval_seconds + (random.uniform(0, jitter) if jitter > 0 else 0.0)

    async def run_once(self) -> list[TaskResult]:
        """Execute one cycle, waiting for an in-progress cycle first."""
        async with self._run_lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> list[TaskResult]:
        """Internal: Execute one cycle (not lock-protected, use run_once)."""
        self._log.info("maintenance.cycle.start")

        results: list[TaskResult] = []
        for task in self._tasks:
            results.append(await self._run_task(task))

        self._log_cycle(results)
        return results

    def _log_cycle(self, results: list[TaskResult]) -> None:
        self._log.info(
            "maintenance.cycle.complete",
            total_updated=sum(r.updated_count for r in results),
            total_errors=sum(len(r.errors) for r in results),
        )

    async def _run_task(self, task: MaintenanceTask) -> TaskResult:
        """Execute a single task with error handling."""
        self._log.info("maintenance.task.start", task=task.name)

        try:
            result = await task.run()
            result.task_name = task.name
        except Exception as e:
            self._log.exception("maintenance.task.failed", task=task.name, error=str(e))
            result = TaskResult(task_name=task.name)
            result.add_error(f"Task failed: {e}")
            return result

        self._log.info(
            "maintenance.task.complete",
            task=task.name,
            processed=result.processed_count,
            updated=result.updated_count,
            errors=len(result.errors),
        )
        for error in result.errors:
            self._log.warning("maintenance.task.item_error", task=task.name, error=error)
        return result

    async def start(self) -> None:
        """Start the background loop. Call stop() to shut it down."""
        if self._running:
            self._log.warning("maintenance.scheduler.already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._background_loop())
        self._log.info(
            "maintenance.scheduler.started",
            interval_seconds=self._config.interval_seconds,
            jitter_seconds=self._config.jitter_seconds,
        )

    async def stop(self) -> None:
        """Stop the background loop."""
        if not self._running:
            return

        self._log.info("maintenance.scheduler.stopping")
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._log.info("maintenance.scheduler.stopped")

    async def _background_loop(self) -> None:
        """Internal background loop."""
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                self._log.exception("maintenance.scheduler.cycle_error", error=str(e))

            try:
                await asyncio.sleep(self.next_delay())
            except asyncio.CancelledError:
                break
