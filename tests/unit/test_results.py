"""Unit tests for result aggregation and reports."""

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

import pytest
from pydantic import ValidationError

from orchestra.execution.results import (
    ENGINE_ERROR_EXIT_CODE,
    ErrorKind,
    OverallStatus,
    RunRecorder,
    TaskError,
    TaskOutcome,
    TaskStatus,
    aggregate,
    compute_overall_status,
    default_report_path,
    exit_code_for,
    write_report,
)


def outcome(
    number: str,
    status: TaskStatus = TaskStatus.SUCCEEDED,
    kind: ErrorKind | None = None,
    continue_on_error: bool = False,
    position: int = 0,
) -> TaskOutcome:
    return TaskOutcome(
        task_number=number,
        task_name="Task",
        position=position,
        status=status,
        exit_code=0 if status == TaskStatus.SUCCEEDED else None,
        error=TaskError(kind=kind, message="boom") if kind else None,
        continue_on_error=continue_on_error,
    )


def succeeded(number: str, position: int = 0) -> TaskOutcome:
    return outcome(number, position=position)


def failed(number: str, continue_on_error: bool = False) -> TaskOutcome:
    return outcome(number, TaskStatus.FAILED, ErrorKind.RUNTIME_FAILURE, continue_on_error)


def skipped(number: str, kind: ErrorKind) -> TaskOutcome:
    return outcome(number, TaskStatus.SKIPPED, kind)


# =============================================================================
# OVERALL STATUS
# =============================================================================


class TestOverallStatus:
    """Tests for compute_overall_status precedence."""

    def test_empty_run_succeeds(self) -> None:
        """Test zero outcomes is a successful run."""
        assert compute_overall_status([]) == OverallStatus.SUCCEEDED

    def test_all_succeeded(self) -> None:
        assert compute_overall_status([succeeded("0001"), succeeded("0002")]) == (
            OverallStatus.SUCCEEDED
        )

    def test_planned_counts_as_success(self) -> None:
        """Test dry-run outcomes aggregate like successes."""
        assert compute_overall_status([outcome("0001", TaskStatus.PLANNED)]) == (
            OverallStatus.SUCCEEDED
        )

    def test_launch_failure_is_failed(self) -> None:
        """Test launch failures dominate everything else."""
        outcomes = [
            outcome("0001", TaskStatus.FAILED, ErrorKind.LAUNCH_FAILURE, continue_on_error=True),
            outcome("0002", TaskStatus.CANCELLED, ErrorKind.CANCELLED),
        ]

        assert compute_overall_status(outcomes) == OverallStatus.FAILED

    def test_unresolved_dependency_is_failed(self) -> None:
        outcomes = [
            failed("0001", continue_on_error=True),
            skipped("0002", ErrorKind.UNRESOLVED_DEPENDENCY),
        ]

        assert compute_overall_status(outcomes) == OverallStatus.FAILED

    def test_cancellation_is_aborted(self) -> None:
        outcomes = [succeeded("0001"), skipped("0002", ErrorKind.CANCELLED)]

        assert compute_overall_status(outcomes) == OverallStatus.ABORTED

    def test_stopped_early_is_aborted(self) -> None:
        """Test a hard failure that skipped the rest of the run aborts it."""
        outcomes = [
            succeeded("0400"),
            failed("0500"),
            skipped("0600", ErrorKind.RUN_ABORTED),
        ]

        assert compute_overall_status(outcomes) == OverallStatus.ABORTED

    def test_hard_failure_without_skips_is_failed(self) -> None:
        """Test a hard failure in the last task, with nothing left to skip."""
        assert compute_overall_status([succeeded("0001"), failed("0002")]) == (
            OverallStatus.FAILED
        )

    def test_timeout_is_a_failure(self) -> None:
        outcomes = [outcome("0001", TaskStatus.FAILED, ErrorKind.TIMEOUT)]

        assert compute_overall_status(outcomes) == OverallStatus.FAILED

    def test_continued_failures_are_partial(self) -> None:
        """Test successes mixed with continue-on-error failures."""
        outcomes = [succeeded("0001"), failed("0002", continue_on_error=True)]

        assert compute_overall_status(outcomes) == OverallStatus.PARTIAL_FAILURE

    def test_only_continued_failures_is_failed(self) -> None:
        assert compute_overall_status([failed("0001", continue_on_error=True)]) == (
            OverallStatus.FAILED
        )

    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (OverallStatus.SUCCEEDED, 0),
            (OverallStatus.PARTIAL_FAILURE, 1),
            (OverallStatus.FAILED, 1),
            (OverallStatus.ABORTED, 1),
        ],
    )
    def test_exit_codes(self, status: OverallStatus, code: int) -> None:
        """Test the status to exit code mapping."""
        assert exit_code_for(status) == code
        assert ENGINE_ERROR_EXIT_CODE == 2


# =============================================================================
# RUN RESULT
# =============================================================================


class TestRunResult:
    """Tests for RunResult and aggregate."""

    def test_aggregate_orders_by_position(self) -> None:
        result = aggregate(
            [succeeded("0300", 2), succeeded("0100", 0), succeeded("0200", 1)],
            playbook="p",
        )

        assert [o.task_number for o in result.outcomes] == ["0100", "0200", "0300"]
        assert result.exit_code == 0

    def test_counts_and_lists(self) -> None:
        result = aggregate(
            [
                succeeded("0400", 0),
                outcome("0500", TaskStatus.FAILED, ErrorKind.RUNTIME_FAILURE, position=1),
                outcome("0600", TaskStatus.SKIPPED, ErrorKind.RUN_ABORTED, position=2),
            ]
        )

        assert result.counts["succeeded"] == 1
        assert result.counts["failed"] == 1
        assert result.counts["skipped"] == 1
        assert result.counts["planned"] == 0
        assert result.completed_tasks == ["0400"]
        assert result.failed_tasks == ["0500"]
        assert result.skipped_tasks == ["0600"]
        assert result.get_outcome("0500").error.kind == ErrorKind.RUNTIME_FAILURE
        assert result.overall_status == OverallStatus.ABORTED

    def test_sealed_result_is_immutable(self) -> None:
        result = aggregate([])

        with pytest.raises(ValidationError):
            result.playbook = "changed"

    @pytest.mark.asyncio
    async def test_recorder_concurrent_adds(self) -> None:
        """Test concurrent completions are all recorded."""
        recorder = RunRecorder(playbook="p")

        await asyncio.gather(*(recorder.add(succeeded(f"{i:04d}", i)) for i in range(50)))
        result = recorder.seal()

        assert len(result.outcomes) == 50
        assert result.run_id == recorder.run_id
        assert result.ended_at >= result.started_at


# =============================================================================
# REPORTS
# =============================================================================


class TestReports:
    """Tests for persisted reports."""

    def test_default_report_path(self, tmp_path: Path) -> None:
        result = aggregate(
            [],
            run_id="abcdef12-3456",
            started_at=datetime(2024, 5, 1, 12, 30, 0, tzinfo=UTC),
        )

        path = default_report_path(result, tmp_path)

        assert path == tmp_path / "run-20240501T123000Z-abcdef12.json"

    def test_write_report(self, tmp_path: Path) -> None:
        result = aggregate(
            [succeeded("0001", 0), failed("0002")],
            playbook="ci",
        )

        path = write_report(result, reports_dir=tmp_path / "reports")
        data = json.loads(path.read_text())

        assert path.parent == tmp_path / "reports"
        assert data["playbook"] == "ci"
        assert data["overall_status"] == "Failed"
        assert data["exit_code"] == 1
        assert data["counts"]["failed"] == 1
        assert data["outcomes"][1]["error"]["kind"] == "runtime_failure"

    def test_write_report_explicit_path(self, tmp_path: Path) -> None:
        target = tmp_path / "out" / "report.json"

        assert write_report(aggregate([]), target) == target
        assert target.exists()
