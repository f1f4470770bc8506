"""
Process runner for automation scripts.

Each task invocation is an independent OS process started with asyncio
subprocess support. The runner captures combined output, enforces the
per-task timeout, honors the run's cancellation token, and escalates from
terminate to kill after a grace period.
"""

import asyncio
import json
import os
import signal
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from orchestra.execution.results import ErrorKind, TaskError, TaskOutcome, TaskStatus
from orchestra.planning.models import Task, TaskInvocation

STATUS_LINE_MAX_LENGTH = 500

_POSIX = os.name == "posix"


# =============================================================================
# CANCELLATION
# =============================================================================


class CancellationToken:
    """
    Cooperative cancellation signal shared by every invocation of a run.

    Example:
        >>> token = CancellationToken()
        >>> token.cancel("operator interrupt")
        >>> token.is_cancelled
        True
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        """Raise the signal. Later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            logger.warning(f"Cancellation requested: {reason}")
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


# =============================================================================
# EXECUTION CONTEXT
# =============================================================================


class ExecutionContext(BaseModel):
    """Explicit context handed to every invocation of a run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    playbook: str = ""
    dry_run: bool = False
    working_dir: Path | None = None
    environment: dict[str, str] = Field(
        default_factory=dict,
        description="Extra variables set for the lifetime of each child process",
    )

    def environment_for(self, invocation: TaskInvocation) -> dict[str, str]:
        """Build the child environment for one invocation."""
        env = os.environ.copy()
        env.update(self.environment)
        env["ORCHESTRA_RUN_ID"] = self.run_id
        env["ORCHESTRA_TASK_NUMBER"] = invocation.number
        env["ORCHESTRA_PLAYBOOK"] = self.playbook
        env["ORCHESTRA_DRY_RUN"] = "1" if self.dry_run else "0"
        env["ORCHESTRA_VARIABLES"] = json.dumps(invocation.variables, default=str)
        return env


def is_elevated() -> bool:
    """Whether the engine runs with administrative privileges."""
    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None:
        return geteuid() == 0
    try:
        import ctypes

        return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
    except (AttributeError, OSError):
        return False


# =============================================================================
# PROCESS RUNNER
# =============================================================================


class ProcessRunner:
    """
    Launch task scripts as child processes.

    Example:
        >>> runner = ProcessRunner({".py": ["python3"]})
        >>> outcome = await runner.run(invocation, context, timeout=30, cancel_token=token)
        >>> outcome.status
        <TaskStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        interpreters: Mapping[str, list[str]] | None = None,
        kill_grace_seconds: float = 5.0,
        enforce_admin: bool = False,
    ) -> None:
        """
        Initialize process runner.

        Args:
            interpreters: Script suffix -> launcher argv prefix.
            kill_grace_seconds: Wait between terminate and kill.
            enforce_admin: Refuse RequiresAdmin tasks when not elevated.
        """
        self.interpreters = {k.lower(): list(v) for k, v in (interpreters or {}).items()}
        self.kill_grace_seconds = kill_grace_seconds
        self.enforce_admin = enforce_admin

    def build_command(self, task: Task, arguments: list[str]) -> list[str]:
        """Build the argv for a task, prefixing its interpreter if one is mapped."""
        prefix = self.interpreters.get(task.path.suffix.lower(), [])
        return [*prefix, str(task.path), *arguments]

    async def run(
        self,
        invocation: TaskInvocation,
        context: ExecutionContext,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
        continue_on_error: bool = False,
    ) -> TaskOutcome:
        """
        Run one invocation to completion, timeout or cancellation.

        Launch problems, non-zero exits and timeouts are returned as outcomes,
        never raised.
        """
        token = cancel_token or CancellationToken()
        task = invocation.task
        started_at = datetime.now(UTC)
        start = time.monotonic()

        def outcome(
            status: TaskStatus,
            exit_code: int | None = None,
            error: TaskError | None = None,
            status_line: str | None = None,
        ) -> TaskOutcome:
            return TaskOutcome(
                task_number=invocation.number,
                task_name=task.name,
                position=invocation.position,
                stage=invocation.stage,
                status=status,
                exit_code=exit_code,
                started_at=started_at,
                ended_at=datetime.now(UTC),
                duration_seconds=time.monotonic() - start,
                status_line=status_line,
                error=error,
                continue_on_error=continue_on_error,
            )

        def launch_failure(message: str) -> TaskOutcome:
            logger.error(f"Task {task.display_name} could not be started: {message}")
            return outcome(
                TaskStatus.FAILED,
                error=TaskError(kind=ErrorKind.LAUNCH_FAILURE, message=message),
            )

        if self.enforce_admin and task.requires_admin and not is_elevated():
            return launch_failure("task requires administrative privileges")
        if not task.path.is_file():
            return launch_failure(f"script not found: {task.path}")

        command = self.build_command(task, invocation.arguments)
        logger.info(f"Starting task {task.display_name}")
        logger.debug(f"Spawning: {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(context.working_dir) if context.working_dir else None,
                env=context.environment_for(invocation),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=_POSIX,
            )
        except OSError as e:
            return launch_failure(str(e))

        output_task = asyncio.create_task(process.communicate())
        cancel_task = asyncio.create_task(token.wait())
        try:
            done, _ = await asyncio.wait(
                {output_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self.terminate(process)
            output_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if output_task in done:
            stdout, _ = output_task.result()
            status_line = self._status_line(stdout)
            exit_code = process.returncode
            if exit_code == 0:
                logger.info(f"Task {task.display_name} succeeded")
                return outcome(TaskStatus.SUCCEEDED, exit_code, status_line=status_line)

            message = f"exited with code {exit_code}"
            if exit_code == 2:
                message += " (task reported an internal error)"
            logger.error(f"Task {task.display_name} failed: {message}")
            return outcome(
                TaskStatus.FAILED,
                exit_code,
                TaskError(kind=ErrorKind.RUNTIME_FAILURE, message=message),
                status_line,
            )

        await self.terminate(process)
        stdout, _ = await output_task
        status_line = self._status_line(stdout)

        if token.is_cancelled:
            logger.warning(f"Task {task.display_name} cancelled")
            return outcome(
                TaskStatus.CANCELLED,
                process.returncode,
                TaskError(kind=ErrorKind.CANCELLED, message=token.reason or "cancelled"),
                status_line,
            )

        logger.error(f"Task {task.display_name} timed out after {timeout}s")
        return outcome(
            TaskStatus.FAILED,
            process.returncode,
            TaskError(kind=ErrorKind.TIMEOUT, message=f"timed out after {timeout} seconds"),
            status_line,
        )

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate gracefully, then kill after the grace period."""
        if process.returncode is not None:
            return

        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            logger.warning(f"Process {process.pid} ignored terminate; killing")
            self._signal(process, signal.SIGKILL if _POSIX else signal.SIGTERM, force=True)
            await process.wait()

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: Any, force: bool = False) -> None:
        try:
            if _POSIX:
                # Children run in their own session; signal the whole group
                os.killpg(process.pid, sig)
            elif force:
                process.kill()
            else:
                process.terminate()
        except (ProcessLookupError, PermissionError):
            pass

    @staticmethod
    def _status_line(output: bytes | None) -> str | None:
        if not output:
            return None
        lines = [
            line.strip()
            for line in output.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
        if not lines:
            return None
        return lines[-1][:STATUS_LINE_MAX_LENGTH]
