"""Integration tests for ProcessRunner against real child processes."""

import asyncio
import json
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from orchestra.execution import process as process_module
from orchestra.execution.process import CancellationToken, ExecutionContext, ProcessRunner
from orchestra.execution.results import ErrorKind, TaskStatus
from orchestra.planning.models import Task, TaskInvocation

pytestmark = pytest.mark.integration


@pytest.fixture
def runner() -> ProcessRunner:
    return ProcessRunner({".py": [sys.executable]}, kill_grace_seconds=1.0)


@pytest.fixture
def context(tmp_path: Path) -> ExecutionContext:
    return ExecutionContext(run_id="run-1234", playbook="integration", working_dir=tmp_path)


def invocation_for(path: Path, arguments: list[str] | None = None, **task_fields) -> TaskInvocation:
    number, _, name = path.stem.partition("_")
    return TaskInvocation(
        task=Task(number=number, name=name, path=path, **task_fields),
        position=0,
        stage="Main",
        arguments=arguments or [],
        variables={"Profile": "Quick"},
    )


class TestProcessRunner:
    """Tests for launching, capturing and classifying task processes."""

    @pytest.mark.asyncio
    async def test_success_captures_status_line(
        self,
        runner: ProcessRunner,
        context: ExecutionContext,
        write_script: Callable[..., Path],
    ) -> None:
        """Test exit code 0 succeeds and the last output line is kept."""
        path = write_script("0001", body="print('first line')\nprint('')", output="all done")

        outcome = await runner.run(invocation_for(path), context)

        assert outcome.status == TaskStatus.SUCCEEDED
        assert outcome.exit_code == 0
        assert outcome.status_line == "all done"
        assert outcome.duration_seconds >= 0
        assert outcome.ended_at >= outcome.started_at

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_runtime_failure(
        self,
        runner: ProcessRunner,
        context: ExecutionContext,
        write_script: Callable[..., Path],
    ) -> None:
        path = write_script("0002", exit_code=3, output="something broke")

        outcome = await runner.run(invocation_for(path), context, continue_on_error=True)

        assert outcome.status == TaskStatus.FAILED
        assert outcome.exit_code == 3
        assert outcome.error.kind == ErrorKind.RUNTIME_FAILURE
        assert outcome.status_line == "something broke"
        assert outcome.continue_on_error is True

    @pytest.mark.asyncio
    async def test_exit_code_two_marks_internal_error(
        self,
        runner: ProcessRunner,
        context: ExecutionContext,
        write_script: Callable[..., Path],
    ) -> None:
        path = write_script("0003", exit_code=2)

        outcome = await runner.run(invocation_for(path), context)

        assert "internal error" in outcome.error.message

    @pytest.mark.asyncio
    async def test_missing_script_is_launch_failure(
        self,
        runner: ProcessRunner,
        context: ExecutionContext,
        tmp_path: Path,
    ) -> None:
        """Test a vanished script never reaches spawn."""
        outcome = await runner.run(invocation_for(tmp_path / "0004_Gone.py"), context)

        assert outcome.status == TaskStatus.FAILED
        assert outcome.exit_code is None
        assert outcome.error.kind == ErrorKind.LAUNCH_FAILURE

    @pytest.mark.asyncio
    async def test_unlaunchable_interpreter(
        self,
        context: ExecutionContext,
        write_script: Callable[..., Path],
    ) -> None:
        """Test a spawn error is reported as a launch failure."""
        path = write_script("0005")
        runner = ProcessRunner({".py": ["/nonexistent/interpreter"]})

        outcome = await runner.run(invocation_for(path), context)

        assert outcome.error.kind == ErrorKind.LAUNCH_FAILURE

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_timeout_terminates_process(
        self,
        runner: ProcessRunner,
        context: ExecutionContext,
        write_script: Callable[..., Path],
    ) -> None:
        """Test a task exceeding its timeout is terminated and classified."""
        path = write_script("0006", output="starting", sleep=30)

        outcome = await runner.run(invocation_for(path), context, timeout=0.5)

        assert outcome.status == TaskStatus.FAILED
        assert outcome.error.kind == ErrorKind.TIMEOUT
        assert "0.5" in outcome.error.message
        assert outcome.duration_seconds < 10

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_cancellation_terminates_process(
        self,
        runner: ProcessRunner,
        context: ExecutionContext,
        write_script: Callable[..., Path],
    ) -> None:
        """Test raising the token stops an in-flight task."""
        path = write_script("0007", sleep=30)
        token = CancellationToken()

        loop = asyncio.get_running_loop()
        loop.call_later(0.3, token.cancel, "operator interrupt")
        outcome = await runner.run(invocation_for(path), context, cancel_token=token)

        assert outcome.status == TaskStatus.CANCELLED
        assert outcome.error.kind == ErrorKind.CANCELLED
        assert outcome.error.message == "operator interrupt"

    @pytest.mark.asyncio
    async def test_environment_and_arguments(
        self,
        runner: ProcessRunner,
        context: ExecutionContext,
        write_script: Callable[..., Path],
    ) -> None:
        """Test the child sees the run context and its arguments."""
        body = (
            "import json\n"
            "print(json.dumps({"
            "'run': os.environ['ORCHESTRA_RUN_ID'], "
            "'task': os.environ['ORCHESTRA_TASK_NUMBER'], "
            "'playbook': os.environ['ORCHESTRA_PLAYBOOK'], "
            "'dry_run': os.environ['ORCHESTRA_DRY_RUN'], "
            "'variables': json.loads(os.environ['ORCHESTRA_VARIABLES']), "
            "'argv': sys.argv[1:], "
            "'cwd': os.getcwd()}))"
        )
        path = write_script("0008", body=body, output=None)

        outcome = await runner.run(invocation_for(path, ["-Profile", "Quick"]), context)
        seen = json.loads(outcome.status_line)

        assert seen["run"] == "run-1234"
        assert seen["task"] == "0008"
        assert seen["playbook"] == "integration"
        assert seen["dry_run"] == "0"
        assert seen["variables"] == {"Profile": "Quick"}
        assert seen["argv"] == ["-Profile", "Quick"]
        assert Path(seen["cwd"]).resolve() == context.working_dir.resolve()

    @pytest.mark.asyncio
    async def test_admin_required_when_not_elevated(
        self,
        context: ExecutionContext,
        write_script: Callable[..., Path],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        path = write_script("0009")
        monkeypatch.setattr(process_module, "is_elevated", lambda: False)
        runner = ProcessRunner({".py": [sys.executable]}, enforce_admin=True)

        outcome = await runner.run(invocation_for(path, requires_admin=True), context)

        assert outcome.error.kind == ErrorKind.LAUNCH_FAILURE
        assert "administrative" in outcome.error.message

    @pytest.mark.asyncio
    async def test_admin_not_enforced_by_default(
        self,
        runner: ProcessRunner,
        context: ExecutionContext,
        write_script: Callable[..., Path],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        path = write_script("0010")
        monkeypatch.setattr(process_module, "is_elevated", lambda: False)

        outcome = await runner.run(invocation_for(path, requires_admin=True), context)

        assert outcome.status == TaskStatus.SUCCEEDED


class TestBuildCommand:
    """Tests for interpreter mapping."""

    def test_mapped_suffix(self, tmp_path: Path) -> None:
        runner = ProcessRunner({".PS1": ["pwsh", "-File"]})
        task = Task(number="0001", name="Setup", path=tmp_path / "0001_Setup.ps1")

        assert runner.build_command(task, ["-Force"]) == [
            "pwsh",
            "-File",
            str(tmp_path / "0001_Setup.ps1"),
            "-Force",
        ]

    def test_unmapped_suffix_runs_directly(self, tmp_path: Path) -> None:
        task = Task(number="0001", name="Setup", path=tmp_path / "0001_Setup.exe")

        assert ProcessRunner().build_command(task, []) == [str(tmp_path / "0001_Setup.exe")]

    def test_context_environment(self, tmp_path: Path) -> None:
        context = ExecutionContext(
            run_id="r", playbook="p", dry_run=True, environment={"EXTRA": "1"}
        )
        invocation = invocation_for(tmp_path / "0042_Check.py")

        env = context.environment_for(invocation)

        assert env["EXTRA"] == "1"
        assert env["ORCHESTRA_DRY_RUN"] == "1"
        assert env["ORCHESTRA_TASK_NUMBER"] == "0042"
