"""Run results - per-task outcomes, aggregate status and persisted reports.

This is the only module that maps run status to process exit codes.
"""

import asyncio
import json
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from orchestra.planning.models import TaskInvocation

# Exit code for fatal engine errors that prevented any task from running
ENGINE_ERROR_EXIT_CODE = 2


# =============================================================================
# ENUMS
# =============================================================================


class TaskStatus(str, Enum):
    """Final status of one task invocation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    PLANNED = "planned"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    """Why an invocation did not succeed."""

    LAUNCH_FAILURE = "launch_failure"
    RUNTIME_FAILURE = "runtime_failure"
    TIMEOUT = "timeout"
    UNRESOLVED_DEPENDENCY = "unresolved_dependency"
    CANCELLED = "cancelled"
    RUN_ABORTED = "run_aborted"


class OverallStatus(str, Enum):
    """Aggregate status of a run."""

    SUCCEEDED = "Succeeded"
    PARTIAL_FAILURE = "PartialFailure"
    FAILED = "Failed"
    ABORTED = "Aborted"


# =============================================================================
# OUTCOMES
# =============================================================================


class TaskError(BaseModel):
    """Error detail attached to a non-successful outcome."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


class TaskOutcome(BaseModel):
    """Result of a single task invocation."""

    model_config = ConfigDict(frozen=True)

    task_number: str
    task_name: str = ""
    position: int = 0
    stage: str = ""
    status: TaskStatus
    exit_code: int | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: float = 0.0
    status_line: str | None = Field(
        default=None,
        description="Last non-empty line of task output",
    )
    error: TaskError | None = None
    continue_on_error: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.PLANNED)

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    @classmethod
    def skipped(
        cls,
        invocation: TaskInvocation,
        kind: ErrorKind,
        message: str,
        continue_on_error: bool = False,
    ) -> "TaskOutcome":
        """Create an outcome for an invocation that was never launched."""
        return cls(
            task_number=invocation.number,
            task_name=invocation.task.name,
            position=invocation.position,
            stage=invocation.stage,
            status=TaskStatus.SKIPPED,
            error=TaskError(kind=kind, message=message),
            continue_on_error=continue_on_error,
        )

    @classmethod
    def planned(cls, invocation: TaskInvocation, continue_on_error: bool = False) -> "TaskOutcome":
        """Create the synthetic outcome recorded for a dry-run invocation."""
        now = datetime.now(UTC)
        command = " ".join([invocation.task.display_name, *invocation.arguments])
        return cls(
            task_number=invocation.number,
            task_name=invocation.task.name,
            position=invocation.position,
            stage=invocation.stage,
            status=TaskStatus.PLANNED,
            exit_code=0,
            started_at=now,
            ended_at=now,
            status_line=f"Planned: {command}",
            continue_on_error=continue_on_error,
        )


class RunResult(BaseModel):
    """Sealed aggregate over one engine execution."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    playbook: str = ""
    dry_run: bool = False
    overall_status: OverallStatus
    outcomes: list[TaskOutcome] = Field(default_factory=list)
    started_at: datetime
    ended_at: datetime

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.overall_status)

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def counts(self) -> dict[str, int]:
        """Number of outcomes per task status."""
        counter = Counter(o.status.value for o in self.outcomes)
        return {status.value: counter.get(status.value, 0) for status in TaskStatus}

    @property
    def completed_tasks(self) -> list[str]:
        return [o.task_number for o in self.outcomes if o.succeeded]

    @property
    def failed_tasks(self) -> list[str]:
        return [
            o.task_number
            for o in self.outcomes
            if o.status in (TaskStatus.FAILED, TaskStatus.CANCELLED)
        ]

    @property
    def skipped_tasks(self) -> list[str]:
        return [o.task_number for o in self.outcomes if o.status == TaskStatus.SKIPPED]

    def get_outcome(self, task_number: str) -> TaskOutcome | None:
        """First outcome recorded for a task number."""
        return next((o for o in self.outcomes if o.task_number == task_number), None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = self.model_dump(mode="json")
        data["exit_code"] = self.exit_code
        data["duration_seconds"] = self.duration_seconds
        data["counts"] = self.counts
        return data


# =============================================================================
# AGGREGATION
# =============================================================================


def compute_overall_status(outcomes: Iterable[TaskOutcome]) -> OverallStatus:
    """
    Compute the aggregate status of a run.

    Rules, in precedence order:
      1. Any launch failure or unresolved dependency -> Failed.
      2. Any cancellation -> Aborted.
      3. Any failure without ContinueOnError -> Aborted if the engine stopped
         early (skipped the rest of the run), else Failed.
      4. Nothing failed or skipped -> Succeeded.
      5. Some succeeded, all failures continued on error -> PartialFailure.
      6. Otherwise -> Failed.
    """
    outcomes = list(outcomes)
    kinds = {o.error_kind for o in outcomes if o.error_kind is not None}

    if kinds & {ErrorKind.LAUNCH_FAILURE, ErrorKind.UNRESOLVED_DEPENDENCY}:
        return OverallStatus.FAILED

    if ErrorKind.CANCELLED in kinds:
        return OverallStatus.ABORTED

    failures = [o for o in outcomes if o.status == TaskStatus.FAILED]
    if any(not o.continue_on_error for o in failures):
        if ErrorKind.RUN_ABORTED in kinds:
            return OverallStatus.ABORTED
        return OverallStatus.FAILED

    skipped = [o for o in outcomes if o.status == TaskStatus.SKIPPED]
    if not failures and not skipped:
        return OverallStatus.SUCCEEDED

    if failures and not skipped and any(o.succeeded for o in outcomes):
        return OverallStatus.PARTIAL_FAILURE

    return OverallStatus.FAILED


def aggregate(
    outcomes: Iterable[TaskOutcome],
    *,
    playbook: str = "",
    run_id: str | None = None,
    dry_run: bool = False,
    started_at: datetime | None = None,
    ended_at: datetime | None = None,
) -> RunResult:
    """
    Merge per-task outcomes into a sealed RunResult.

    Example:
        >>> result = aggregate([])
        >>> result.overall_status
        <OverallStatus.SUCCEEDED: 'Succeeded'>
    """
    ordered = sorted(outcomes, key=lambda o: o.position)
    now = datetime.now(UTC)
    fields: dict[str, Any] = {
        "playbook": playbook,
        "dry_run": dry_run,
        "overall_status": compute_overall_status(ordered),
        "outcomes": ordered,
        "started_at": started_at or now,
        "ended_at": ended_at or now,
    }
    if run_id:
        fields["run_id"] = run_id
    return RunResult(**fields)


def exit_code_for(status: OverallStatus) -> int:
    """Process exit code for an aggregate status."""
    return 0 if status == OverallStatus.SUCCEEDED else 1


class RunRecorder:
    """
    Accumulates outcomes while a run is in flight.

    Appends are serialized through a lock so concurrent completions never
    interleave; ``seal`` produces the immutable RunResult.
    """

    def __init__(self, playbook: str = "", dry_run: bool = False) -> None:
        self.run_id = str(uuid4())
        self.playbook = playbook
        self.dry_run = dry_run
        self.started_at = datetime.now(UTC)
        self._outcomes: list[TaskOutcome] = []
        self._lock = asyncio.Lock()

    async def add(self, outcome: TaskOutcome) -> None:
        """Record a completed (or skipped) invocation."""
        async with self._lock:
            self._outcomes.append(outcome)

    @property
    def outcomes(self) -> list[TaskOutcome]:
        return list(self._outcomes)

    def seal(self) -> RunResult:
        """Seal the run into an immutable RunResult."""
        return aggregate(
            self._outcomes,
            playbook=self.playbook,
            run_id=self.run_id,
            dry_run=self.dry_run,
            started_at=self.started_at,
            ended_at=datetime.now(UTC),
        )


# =============================================================================
# REPORTS
# =============================================================================


def default_report_path(result: RunResult, reports_dir: str | Path) -> Path:
    """Report path of the form ``run-<UTC timestamp>-<run id prefix>.json``."""
    stamp = result.started_at.strftime("%Y%m%dT%H%M%SZ")
    return Path(reports_dir) / f"run-{stamp}-{result.run_id[:8]}.json"


def write_report(
    result: RunResult,
    path: str | Path | None = None,
    reports_dir: str | Path = "reports",
) -> Path:
    """
    Persist a RunResult as machine-readable JSON.

    Args:
        result: Sealed run result.
        path: Explicit output path; defaults to a timestamped file.
        reports_dir: Directory used when no explicit path is given.

    Returns:
        Path of the written report.
    """
    report_path = Path(path) if path else default_report_path(result, reports_dir)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    logger.info(f"Run report written to {report_path}")
    return report_path
