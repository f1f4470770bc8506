"""
Plan executor for Orchestra.

This module runs a resolved ``Plan`` stage by stage. Stage boundaries are
hard barriers; within a parallel-eligible stage invocations are dispatched to
a bounded pool, everywhere else they run one at a time in list order.
"""

import asyncio
from collections.abc import Callable
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from orchestra.execution.process import CancellationToken, ExecutionContext, ProcessRunner
from orchestra.execution.results import (
    ErrorKind,
    RunRecorder,
    RunResult,
    TaskError,
    TaskOutcome,
    TaskStatus,
)
from orchestra.planning.models import Plan, Stage, TaskInvocation

# =============================================================================
# OPTIONS
# =============================================================================


class ExecutionOptions(BaseModel):
    """Caller options shared by every execution strategy."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    dry_run: bool = Field(default=False, description="Record planned outcomes only")
    continue_on_error: bool = Field(
        default=False,
        description="Default policy for invocations that do not declare one",
    )
    timeout: float | None = Field(default=None, gt=0, description="Per-task timeout")
    max_concurrency: int = Field(default=4, ge=1, description="Worker pool size")
    working_dir: Path | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    cancel_token: CancellationToken | None = None


OutcomeCallback = Callable[[TaskOutcome], None]


# =============================================================================
# RUN STATE
# =============================================================================


class _RunState:
    """Mutable bookkeeping for one execution."""

    def __init__(self, recorder: RunRecorder, token: CancellationToken) -> None:
        self.recorder = recorder
        self.token = token
        self.latest: dict[str, TaskOutcome] = {}
        self.stop_reason: str | None = None

    @property
    def halted(self) -> bool:
        return self.stop_reason is not None or self.token.is_cancelled

    def unresolved(self, invocation: TaskInvocation) -> list[str]:
        """In-plan dependencies that did not succeed."""
        return [
            dep
            for dep in invocation.dependencies
            if dep not in self.latest or not self.latest[dep].succeeded
        ]

    async def record(self, outcome: TaskOutcome) -> None:
        await self.recorder.add(outcome)
        self.latest[outcome.task_number] = outcome
        if (
            outcome.status == TaskStatus.FAILED
            and not outcome.continue_on_error
            and self.stop_reason is None
        ):
            self.stop_reason = f"task {outcome.task_number} failed"
            logger.warning(f"Stopping run: {self.stop_reason}")


# =============================================================================
# BASE EXECUTOR
# =============================================================================


class BaseExecutor:
    """
    Shared stage loop for the execution strategies.

    Subclasses only decide how the invocations of one stage are dispatched.
    """

    mode = "base"

    def __init__(self, runner: ProcessRunner | None = None) -> None:
        self.runner = runner or ProcessRunner()
        self._callbacks: list[OutcomeCallback] = []

    def add_callback(self, callback: OutcomeCallback) -> None:
        """Add a callback for task completion events."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: OutcomeCallback) -> None:
        """Remove a callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _emit_callback(self, outcome: TaskOutcome) -> None:
        for callback in self._callbacks:
            try:
                callback(outcome)
            except Exception as e:
                logger.warning(f"Callback error: {e}")

    async def execute(self, plan: Plan, options: ExecutionOptions | None = None) -> RunResult:
        """
        Execute a plan.

        Args:
            plan: Resolved plan.
            options: Execution options; defaults apply when omitted.

        Returns:
            Sealed RunResult. Per-task failures are recorded, never raised.
        """
        options = options or ExecutionOptions()
        token = options.cancel_token or CancellationToken()
        recorder = RunRecorder(plan.playbook, options.dry_run)
        state = _RunState(recorder, token)
        context = ExecutionContext(
            run_id=recorder.run_id,
            playbook=plan.playbook,
            dry_run=options.dry_run,
            working_dir=options.working_dir,
            environment=options.environment,
        )

        logger.info(
            f"Run {recorder.run_id[:8]} started: playbook '{plan.playbook}', "
            f"{plan.total_stages} stages, {plan.task_count} tasks, mode={self.mode}"
            f"{' (dry run)' if options.dry_run else ''}"
        )

        for index, stage in enumerate(plan.stages):
            if state.halted:
                logger.info(f"Skipping stage {index} '{stage.name}'")
                await self._run_sequentially(stage, state, context, options)
                continue

            logger.info(
                f"Starting stage {index} '{stage.name}' with {len(stage.invocations)} tasks"
            )
            await self.execute_stage(stage, state, context, options)

        result = recorder.seal()
        logger.info(
            f"Run {result.run_id[:8]} finished: {result.overall_status.value} "
            f"({len(result.completed_tasks)} succeeded, {len(result.failed_tasks)} failed, "
            f"{len(result.skipped_tasks)} skipped)"
        )
        return result

    async def execute_stage(
        self,
        stage: Stage,
        state: _RunState,
        context: ExecutionContext,
        options: ExecutionOptions,
    ) -> None:
        raise NotImplementedError

    async def _run_sequentially(
        self,
        stage: Stage,
        state: _RunState,
        context: ExecutionContext,
        options: ExecutionOptions,
    ) -> None:
        for invocation in stage.invocations:
            await self._run_invocation(invocation, state, context, options)

    @staticmethod
    def _continue_on_error(invocation: TaskInvocation, options: ExecutionOptions) -> bool:
        """The invocation's own policy, else the run default."""
        if invocation.continue_on_error is None:
            return options.continue_on_error
        return invocation.continue_on_error

    async def _run_invocation(
        self,
        invocation: TaskInvocation,
        state: _RunState,
        context: ExecutionContext,
        options: ExecutionOptions,
    ) -> TaskOutcome:
        continue_on_error = self._continue_on_error(invocation, options)


        unresolved = state.unresolved(invocation)
        if state.token.is_cancelled:
            outcome = TaskOutcome.skipped(
                invocation, ErrorKind.CANCELLED, state.token.reason or "run cancelled",
                continue_on_error,
            )
        elif state.stop_reason is not None:
            outcome = TaskOutcome.skipped(
                invocation, ErrorKind.RUN_ABORTED, f"run stopped: {state.stop_reason}",
                continue_on_error,
            )
        elif unresolved:
            logger.warning(
                f"Skipping task {invocation.task.display_name}: "
                f"dependencies did not succeed: {', '.join(unresolved)}"
            )
            outcome = TaskOutcome.skipped(
                invocation,
                ErrorKind.UNRESOLVED_DEPENDENCY,
                f"dependencies did not succeed: {', '.join(unresolved)}",
                continue_on_error,
            )
        elif options.dry_run or invocation.dry_run:
            logger.debug(f"Dry run: planned {invocation.task.display_name}")
            outcome = TaskOutcome.planned(invocation, continue_on_error)
        else:
            outcome = await self.runner.run(
                invocation,
                context,
                timeout=invocation.timeout or options.timeout,
                cancel_token=state.token,
                continue_on_error=continue_on_error,
            )

        await state.record(outcome)
        self._emit_callback(outcome)
        return outcome


# =============================================================================
# SEQUENTIAL EXECUTOR
# =============================================================================


class SequentialExecutor(BaseExecutor):
    """
    Execute every invocation one at a time, in plan order.

    Example:
        >>> result = await SequentialExecutor().execute(plan)
        >>> result.overall_status
        <OverallStatus.SUCCEEDED: 'Succeeded'>
    """

    mode = "sequential"

    async def execute_stage(
        self,
        stage: Stage,
        state: _RunState,
        context: ExecutionContext,
        options: ExecutionOptions,
    ) -> None:
        await self._run_sequentially(stage, state, context, options)


# =============================================================================
# PARALLEL EXECUTOR
# =============================================================================


class ParallelExecutor(BaseExecutor):
    """
    Execute parallel-eligible stages on a bounded worker pool.

    Stages that are not parallel-eligible fall back to sequential dispatch.
    After a failure without ContinueOnError, invocations that have not yet
    acquired a worker are skipped; in-flight ones run to completion.

    Example:
        >>> executor = ParallelExecutor()
        >>> result = await executor.execute(plan, ExecutionOptions(max_concurrency=8))
    """

    mode = "parallel"

    async def execute_stage(
        self,
        stage: Stage,
        state: _RunState,
        context: ExecutionContext,
        options: ExecutionOptions,
    ) -> None:
        if not stage.parallel_eligible or len(stage.invocations) < 2:
            await self._run_sequentially(stage, state, context, options)
            return

        semaphore = asyncio.Semaphore(options.max_concurrency)

        async def run_with_semaphore(invocation: TaskInvocation) -> TaskOutcome:
            async with semaphore:
                return await self._run_invocation(invocation, state, context, options)

        results = await asyncio.gather(
            *(run_with_semaphore(inv) for inv in stage.invocations),
            return_exceptions=True,
        )

        for invocation, result in zip(stage.invocations, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error(f"Task {invocation.task.display_name} raised: {result}")
                outcome = TaskOutcome(
                    task_number=invocation.number,
                    task_name=invocation.task.name,
                    position=invocation.position,
                    stage=invocation.stage,
                    status=TaskStatus.FAILED,
                    error=TaskError(kind=ErrorKind.LAUNCH_FAILURE, message=str(result)),
                    continue_on_error=self._continue_on_error(invocation, options),
                )
                await state.record(outcome)
                self._emit_callback(outcome)


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================


def create_executor(
    mode: str = "parallel",
    runner: ProcessRunner | None = None,
) -> SequentialExecutor | ParallelExecutor:
    """
    Create an executor for the given strategy.

    Args:
        mode: "parallel" or "sequential".
        runner: Process runner; a default one is built when omitted.

    Example:
        >>> executor = create_executor("sequential")
        >>> result = await executor.execute(plan, ExecutionOptions(dry_run=True))
    """
    if mode == "sequential":
        return SequentialExecutor(runner)
    if mode == "parallel":
        return ParallelExecutor(runner)
    raise ValueError(f"Unknown execution mode: {mode!r}")


async def execute_plan(
    plan: Plan,
    options: ExecutionOptions | None = None,
    mode: str = "parallel",
    runner: ProcessRunner | None = None,
) -> RunResult:
    """Convenience function to execute a plan with a fresh executor."""
    return await create_executor(mode, runner).execute(plan, options)
