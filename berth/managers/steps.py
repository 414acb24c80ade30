"""Ordered provisioning steps with per-step severity.

A plan is a list of named steps. Each step runs once, is logged, and
yields a StepResult. ``aggregate_steps`` is the single place that turns
results into an outcome: a failed FATAL step aborts, a failed TRANSIENT
step is recorded and provisioning carries on.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from berth.errors import InfrastructureFatalError

logger = structlog.get_logger()


class Severity(str, Enum):
    FATAL = "fatal"
    TRANSIENT = "transient"


@dataclass
class StepResult:
    """Outcome of one provisioning step."""

    name: str
    severity: Severity
    ok: bool
    error: str | None = None


@dataclass
class ProvisioningReport:
    """Aggregated outcome of a plan that did not abort."""

    steps: list[StepResult] = field(default_factory=list)

    @property
    def degraded(self) -> list[str]:
        """Names of TRANSIENT steps that failed."""
        return [s.name for s in self.steps if not s.ok]

    @property
    def complete(self) -> bool:
        return all(s.ok for s in self.steps)


def aggregate_steps(results: list[StepResult]) -> ProvisioningReport:
    """Abort on any failed FATAL step, otherwise report.

    Raises:
        InfrastructureFatalError: if a FATAL step failed
    """
    for result in results:
        if not result.ok and result.severity == Severity.FATAL:
            raise InfrastructureFatalError(
                f"Provisioning step '{result.name}' failed: {result.error}",
                details={
                    "step": result.name,
                    "completed": [r.name for r in results if r.ok],
                },
            )
    return ProvisioningReport(steps=list(results))


async def run_step(
    name: str,
    severity: Severity,
    action: Callable[[], Awaitable[object]],
    **ctx: object,
) -> StepResult:
    """Run one step and capture its failure instead of raising."""
    log = logger.bind(step=name, severity=severity.value, **ctx)
    try:
        await action()
    except Exception as e:
        if severity == Severity.FATAL:
            log.error("provision.step.failed", error=str(e))
        else:
            log.warning("provision.step.failed", error=str(e))
        return StepResult(name=name, severity=severity, ok=False, error=str(e))

    log.debug("provision.step.ok")
    return StepResult(name=name, severity=severity, ok=True)


@dataclass
class _PlannedStep:
    name: str
    severity: Severity
    action: Callable[[], Awaitable[object]]


class ProvisioningPlan:
    """Ordered list of steps.

    Usage:
        plan = ProvisioningPlan(namespace="student-alice")
        plan.add("namespace", Severity.FATAL, create_ns)
        plan.add("resource_quota", Severity.TRANSIENT, create_quota)
        report = await plan.execute()
    """

    def __init__(self, **ctx: object) -> None:
        self._steps: list[_PlannedStep] = []
        self._ctx = ctx

    def add(
        self,
        name: str,
        severity: Severity,
        action: Callable[[], Awaitable[object]],
    ) -> "ProvisioningPlan":
        self._steps.append(_PlannedStep(name=name, severity=severity, action=action))
        return self

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self._steps]

    async def execute(self) -> ProvisioningReport:
        """Run steps in order, stopping after the first failed FATAL step."""
        results: list[StepResult] = []
        for step in self._steps:
            result = await run_step(step.name, step.severity, step.action, **self._ctx)
            results.append(result)
            if not result.ok and result.severity == Severity.FATAL:
                break
        return aggregate_steps(results)
