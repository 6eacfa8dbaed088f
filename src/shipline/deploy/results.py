"""Result models for shipline pipeline runs and compose operations.

All results are Pydantic models so they serialise to the run's
``summary.json``, to ``--json`` CLI output, and validate when read back.

Key Concepts:
    OverallStatus: PASSED, FAILED, PARTIAL, ERROR, SKIPPED, RUNNING,
        PENDING, ROLLED_BACK.
    StepName: build, transfer, activate, maintain, health, rollback.
    StepResult: One pipeline step: status, timings, commands run, their
        output and the error that stopped it.
    ServiceStatus: One compose service as reported by ``compose ps``.
    HealthReport: Outcome of probing the application's health endpoint.
    DeploymentResult: Ad-hoc compose operation (up/down/restart/status/logs).
    PipelineResult: Whole run. ``mark_complete()`` derives status and
        summary; ``exit_code`` is what the CLI exits with.

Architecture Decisions:
    - ISO-8601 string timestamps: ``started_at``/``completed_at`` are
      strings for trivial JSON round-trips.
    - ``mark_complete()`` pattern: results are created at step start,
      mutated as work progresses, and finalised in one call.

Tags:
    results, models, pydantic, deployment, status, reporting
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Shared enums
# ---------------------------------------------------------------------------


class OverallStatus(str, Enum):
    """Overall status of a step, run or compose operation."""

    PASSED = "PASSED"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"
    RUNNING = "RUNNING"
    PENDING = "PENDING"
    ROLLED_BACK = "ROLLED_BACK"


class StepName(str, Enum):
    """Pipeline steps in execution order (rollback only runs on failure)."""

    BUILD = "build"
    TRANSFER = "transfer"
    ACTIVATE = "activate"
    MAINTAIN = "maintain"
    HEALTH = "health"
    ROLLBACK = "rollback"


# Steps after which the running stack may be broken
ROLLBACK_TRIGGERS = frozenset({StepName.ACTIVATE, StepName.MAINTAIN, StepName.HEALTH})


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _elapsed(started_at: str, completed_at: str) -> float:
    start = datetime.fromisoformat(started_at)
    end = datetime.fromisoformat(completed_at)
    return (end - start).total_seconds()


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------


class CommandRecord(BaseModel):
    """A command a step ran, with redacted argv and captured output."""

    command: str
    host: str = "local"
    exit_code: int = 0
    duration_seconds: float = 0.0
    stdout: str = ""
    stderr: str = ""


class StepResult(BaseModel):
    """Result of one pipeline step."""

    name: StepName
    status: OverallStatus = OverallStatus.PENDING
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    commands: list[CommandRecord] = Field(default_factory=list)
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_details: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status in (OverallStatus.PASSED, OverallStatus.SKIPPED)

    def mark_complete(self, status: OverallStatus | None = None) -> None:
        """Finalize the step; status defaults to PASSED unless an error was recorded."""
        self.completed_at = _now()
        self.duration_seconds = _elapsed(self.started_at, self.completed_at)
        if status is not None:
            self.status = status
        elif self.error:
            self.status = OverallStatus.FAILED
        else:
            self.status = OverallStatus.PASSED

    @property
    def log_text(self) -> str:
        """Commands and their output as plain text for ``<step>.log``."""
        lines = [f"# step: {self.name.value}  status: {self.status.value}"]
        for rec in self.commands:
            lines.append(f"$ [{rec.host}] {rec.command}  (exit {rec.exit_code}, {rec.duration_seconds:.1f}s)")
            if rec.stdout.strip():
                lines.append(rec.stdout.rstrip())
            if rec.stderr.strip():
                lines.append(rec.stderr.rstrip())
        if self.error:
            lines.append(f"ERROR: {self.error}")
        return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Service / health
# ---------------------------------------------------------------------------


ServiceState = Literal[
    "running", "healthy", "unhealthy", "exited", "restarting", "starting", "not_found"
]


class ServiceStatus(BaseModel):
    """Status of a single compose service."""

    name: str
    container_id: str | None = None
    container_name: str | None = None
    image: str | None = None
    status: ServiceState = "not_found"
    error: str | None = None

    @property
    def is_up(self) -> bool:
        return self.status in ("running", "healthy")


class HealthReport(BaseModel):
    """Outcome of probing the health endpoint."""

    url: str
    ok: bool = False
    http_status: int | None = None
    status: str | None = None
    checks: dict[str, str] = Field(default_factory=dict)
    failed_checks: list[str] = Field(default_factory=list)
    attempts: int = 0
    elapsed_seconds: float = 0.0
    error: str | None = None
    body: Any = None

    @property
    def summary(self) -> str:
        if self.ok:
            return f"healthy ({len(self.checks)} checks ok)"
        if self.error:
            return f"unhealthy: {self.error}"
        return f"unhealthy: failed checks {', '.join(self.failed_checks) or 'none'}"


# ---------------------------------------------------------------------------
# Compose operation result
# ---------------------------------------------------------------------------


class DeploymentResult(BaseModel):
    """Result of a compose operation (up/down/restart/status/logs)."""

    run_id: str
    mode: str
    host: str = "local"
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    services: list[ServiceStatus] = Field(default_factory=list)
    overall_status: OverallStatus = OverallStatus.PENDING
    compose_files: list[str] = Field(default_factory=list)
    output: str = ""
    error: str | None = None
    summary: str = ""

    def mark_complete(self, status: OverallStatus | None = None) -> None:
        """Mark operation as complete, compute duration and status."""
        self.completed_at = _now()
        self.duration_seconds = _elapsed(self.started_at, self.completed_at)
        if status:
            self.overall_status = status
        elif self.error:
            self.overall_status = OverallStatus.ERROR
        elif not self.services:
            self.overall_status = OverallStatus.PASSED
        elif all(s.is_up for s in self.services):
            self.overall_status = OverallStatus.PASSED
        elif any(s.is_up for s in self.services):
            self.overall_status = OverallStatus.PARTIAL
        else:
            self.overall_status = OverallStatus.FAILED
        healthy = sum(1 for s in self.services if s.is_up)
        self.summary = f"{healthy}/{len(self.services)} services up"


# ---------------------------------------------------------------------------
# Pipeline result
# ---------------------------------------------------------------------------


class PipelineResult(BaseModel):
    """Result of a full build -> transfer -> activate -> maintain -> health run."""

    run_id: str
    project: str = ""
    host: str = "local"
    image: str = ""
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    steps: list[StepResult] = Field(default_factory=list)
    services: list[ServiceStatus] = Field(default_factory=list)
    health: HealthReport | None = None
    rolled_back: bool = False
    previous_image_id: str | None = None
    new_image_id: str | None = None
    overall_status: OverallStatus = OverallStatus.PENDING
    failed_step: StepName | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    summary: str = ""

    def step(self, name: StepName) -> StepResult | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def exit_code(self) -> int:
        return 0 if self.overall_status == OverallStatus.PASSED else 1

    def mark_complete(self) -> None:
        """Finalize the run: duration, overall status and summary."""
        self.completed_at = _now()
        self.duration_seconds = _elapsed(self.started_at, self.completed_at)

        failed = [s for s in self.steps if s.name != StepName.ROLLBACK and not s.ok]
        if failed and self.failed_step is None:
            self.failed_step = failed[0].name

        if self.rolled_back:
            self.overall_status = OverallStatus.ROLLED_BACK
        elif any(s.status == OverallStatus.ERROR for s in failed):
            self.overall_status = OverallStatus.ERROR
        elif failed or self.error:
            self.overall_status = OverallStatus.FAILED
        elif not self.steps or all(s.status == OverallStatus.SKIPPED for s in self.steps):
            self.overall_status = OverallStatus.SKIPPED
        else:
            self.overall_status = OverallStatus.PASSED

        done = sum(1 for s in self.steps if s.status == OverallStatus.PASSED)
        parts = [f"{done}/{len(self.steps)} steps passed"]
        if self.failed_step is not None:
            parts.append(f"failed at {self.failed_step.value}")
        if self.rolled_back:
            parts.append("rolled back")
        if self.health is not None:
            parts.append(self.health.summary)
        self.summary = (
            f"{self.overall_status.value}: {', '.join(parts)} in {self.duration_seconds:.1f}s"
        )


__all__ = [
    "ROLLBACK_TRIGGERS",
    "CommandRecord",
    "DeploymentResult",
    "HealthReport",
    "OverallStatus",
    "PipelineResult",
    "ServiceStatus",
    "StepName",
    "StepResult",
]
