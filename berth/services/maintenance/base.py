"""Maintenance task base classes and result structures."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class TaskResult:
    """Result of a maintenance task execution.

    Attributes:
        task_name: Name of the task
        processed_count: Number of records examined
        updated_count: Number of records changed
        errors: Error messages for items that failed
    """

    task_name: str = ""
    processed_count: int = 0
    updated_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether the task completed without errors."""
        return len(self.errors) == 0

    def add_error(self, error: str) -> None:
        """Add an error message."""
        self.errors.append(error)


class MaintenanceTask(ABC):
    """Abstract base class for maintenance tasks.

    - ReconcileInstancesTask: refresh instance status from the cluster
    - ExpiredGrantSweepTask: expire grants past their expiry
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the task name (for logging)."""
        ...

    @abstractmethod
    async def run(self) -> TaskResult:
        """Execute the task.

        Per-item failures are collected in TaskResult.errors rather than
        aborting the task.
        """
        ...
