"""Main orchestrator - coordinates registry, loader, resolver and executor.

This module provides the primary interface for running playbooks: it wires
settings into the registry build, playbook loading, plan resolution and the
execution strategies, and owns the run-level concerns (logging sinks,
run timeout, signal handling and persisted reports).
"""

import asyncio
import signal
import sys
from collections.abc import Callable, Mapping
from contextlib import suppress
from pathlib import Path
from typing import Any

from loguru import logger

from orchestra.core.config import Settings, get_settings
from orchestra.core.exceptions import OrchestraError
from orchestra.execution.executor import ExecutionOptions, create_executor
from orchestra.execution.process import CancellationToken, ProcessRunner
from orchestra.execution.results import (
    ENGINE_ERROR_EXIT_CODE,
    RunResult,
    TaskOutcome,
    write_report,
)
from orchestra.planning.dependency_resolver import SequenceResolver
from orchestra.planning.loader import PlaybookLoader
from orchestra.planning.models import Plan, Playbook, TaskRef
from orchestra.planning.registry import TaskRegistry, build_registry

ADHOC_PREFIX = "adhoc:"

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


class Orchestrator:
    """
    Main orchestration engine.

    Coordinates the pipeline from playbook to exit code:
    1. Build the task registry (once, cached)
    2. Load the playbook or expand an ad-hoc selection
    3. Resolve it into a plan of stages
    4. Execute the plan (sequential or parallel, optionally dry run)
    5. Aggregate outcomes and persist a report

    Example:
        >>> orchestra = Orchestrator()
        >>> result = await orchestra.run("ci-validate", dry_run=True)
        >>> result.overall_status
        <OverallStatus.SUCCEEDED: 'Succeeded'>

        >>> exit_code, result = await orchestra.execute(selection="0400-0499")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        configure_logging: bool = True,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Optional settings override. Uses default if not provided.
            configure_logging: Install loguru sinks from settings.
        """
        self.settings = settings or get_settings()
        self.loader = PlaybookLoader(self.settings.orchestra_playbooks_dir)
        self.runner = ProcessRunner(
            interpreters=self.settings.orchestra_interpreters,
            kill_grace_seconds=self.settings.orchestra_kill_grace_seconds,
            enforce_admin=self.settings.orchestra_enforce_admin,
        )
        self._registry: TaskRegistry | None = None

        if configure_logging:
            self._configure_logging()

    def _configure_logging(self) -> None:
        """Configure loguru based on settings."""
        logger.remove()

        logs_dir = Path(self.settings.orchestra_log_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(logs_dir / "orchestra_{time:YYYY-MM-DD}.log"),
            rotation="1 day",
            retention="7 days",
            level=self.settings.orchestra_log_level,
            format=LOG_FORMAT,
        )
        logger.add(
            lambda msg: print(msg, end="", file=sys.stderr),
            level=self.settings.orchestra_log_level,
            format=LOG_FORMAT,
            colorize=True,
        )

    # =========================================================================
    # REGISTRY & PLANNING
    # =========================================================================

    @property
    def registry(self) -> TaskRegistry:
        """Task registry, built on first access."""
        if self._registry is None:
            self._registry = build_registry(
                self.settings.orchestra_scripts_root,
                self.settings.orchestra_manifest_path,
            )
        return self._registry

    def refresh_registry(self) -> TaskRegistry:
        """Discard the cached registry and rebuild it."""
        self._registry = None
        return self.registry

    def load_playbook(
        self,
        name: str,
        overrides: Mapping[str, Any] | None = None,
    ) -> Playbook:
        """Load a named playbook with variable overrides applied."""
        return self.loader.load(name, overrides)

    def adhoc_playbook(
        self,
        selection: str,
        overrides: Mapping[str, Any] | None = None,
    ) -> Playbook:
        """
        Build a playbook from an ad-hoc task selection.

        Example:
            >>> playbook = orchestra.adhoc_playbook("0100,0400-0499")
            >>> playbook.name
            'adhoc:0100,0400-0499'
        """
        numbers = self.registry.select(selection)
        logger.debug(f"Selection '{selection}' expanded to {numbers}")
        return Playbook(
            name=f"{ADHOC_PREFIX}{selection}",
            description="Ad-hoc task selection",
            sequence=[TaskRef(number=n) for n in numbers],
            variables=dict(overrides or {}),
            infer_order=True,
        )

    def plan(
        self,
        playbook: str | Playbook | None = None,
        *,
        selection: str | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> Plan:
        """
        Resolve a playbook (or ad-hoc selection) into a plan.

        Args:
            playbook: Playbook name, path or already loaded Playbook.
            selection: Ad-hoc selection used instead of a playbook.
            overrides: Caller-supplied variables.

        Raises:
            OrchestraError: On any registry, load or resolution failure.
        """
        if isinstance(playbook, Playbook):
            loaded = self.loader.apply_variables(playbook, overrides)
        elif playbook is not None:
            loaded = self.load_playbook(playbook, overrides)
        elif selection is not None:
            loaded = self.adhoc_playbook(selection, overrides)
        else:
            raise ValueError("Either a playbook or a selection is required")

        return SequenceResolver(self.registry).resolve(loaded, overrides)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def build_options(
        self,
        *,
        dry_run: bool = False,
        max_concurrency: int | None = None,
        continue_on_error: bool | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionOptions:
        """Build execution options, falling back to settings."""
        working_dir = self.settings.orchestra_working_dir
        return ExecutionOptions(
            dry_run=dry_run,
            continue_on_error=(
                self.settings.orchestra_continue_on_error
                if continue_on_error is None
                else continue_on_error
            ),
            timeout=timeout or self.settings.orchestra_task_timeout,
            max_concurrency=max_concurrency or self.settings.orchestra_max_concurrency,
            working_dir=Path(working_dir) if working_dir else None,
            cancel_token=cancel_token,
        )

    async def run(
        self,
        playbook: str | Playbook | None = None,
        *,
        selection: str | None = None,
        overrides: Mapping[str, Any] | None = None,
        dry_run: bool = False,
        sequential: bool = False,
        max_concurrency: int | None = None,
        continue_on_error: bool | None = None,
        timeout: float | None = None,
        run_timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
        handle_signals: bool = False,
        on_outcome: Callable[[TaskOutcome], None] | None = None,
    ) -> RunResult:
        """
        Resolve and execute a playbook.

        Args:
            playbook: Playbook name, path or Playbook.
            selection: Ad-hoc selection instead of a playbook.
            overrides: Caller-supplied variables.
            dry_run: Record planned outcomes instead of launching tasks.
            sequential: Force the sequential strategy.
            max_concurrency: Worker pool size for parallel stages.
            continue_on_error: Engine default ContinueOnError policy.
            timeout: Per-task timeout in seconds.
            run_timeout: Cancel the whole run after this many seconds.
            cancel_token: External cancellation signal.
            handle_signals: Raise the cancellation token on SIGINT/SIGTERM.
            on_outcome: Called as each task outcome is recorded.

        Returns:
            Sealed RunResult.

        Raises:
            OrchestraError: If registry build, loading or resolution fails.
        """
        plan = self.plan(playbook, selection=selection, overrides=overrides)

        token = cancel_token or CancellationToken()
        options = self.build_options(
            dry_run=dry_run,
            max_concurrency=max_concurrency,
            continue_on_error=continue_on_error,
            timeout=timeout,
            cancel_token=token,
        )
        executor = create_executor("sequential" if sequential else "parallel", self.runner)
        if on_outcome is not None:
            executor.add_callback(on_outcome)

        loop = asyncio.get_running_loop()
        timer = None
        if run_timeout:
            timer = loop.call_later(
                run_timeout, token.cancel, f"run timeout of {run_timeout}s exceeded"
            )
        installed = self._install_signal_handlers(loop, token) if handle_signals else []

        try:
            return await executor.execute(plan, options)
        finally:
            if timer is not None:
                timer.cancel()
            for sig in installed:
                loop.remove_signal_handler(sig)

    async def dry_run(
        self,
        playbook: str | Playbook | None = None,
        **kwargs: Any,
    ) -> RunResult:
        """Run the full resolution path without launching any task."""
        return await self.run(playbook, dry_run=True, **kwargs)

    async def validate_playbooks(
        self,
        names: list[str] | None = None,
    ) -> dict[str, RunResult | OrchestraError]:
        """
        Dry-run every named playbook (all playbooks by default).

        Registry errors are fatal for the whole validation and propagate;
        per-playbook load and resolution errors are collected.
        """
        registry = self.registry
        names = names or self.loader.list_playbooks()
        logger.info(f"Validating {len(names)} playbooks against {len(registry)} tasks")

        results: dict[str, RunResult | OrchestraError] = {}
        for name in names:
            try:
                results[name] = await self.dry_run(name)
            except OrchestraError as e:
                logger.error(f"Playbook '{name}' is invalid: {e}")
                results[name] = e
        return results

    async def execute(
        self,
        playbook: str | Playbook | None = None,
        *,
        report_path: str | Path | None = None,
        write_reports: bool = True,
        **kwargs: Any,
    ) -> tuple[int, RunResult | None]:
        """
        Run a playbook end to end and map the outcome to an exit code.

        Fatal engine errors are logged and mapped to exit code 2 with no
        result. Otherwise the result is persisted and its exit code returned; a
        report that cannot be written is logged and does not change the code.

        Example:
            >>> exit_code, result = await orchestra.execute("ci-validate")
            >>> exit_code
            0
        """
        kwargs.setdefault("handle_signals", True)
        try:
            result = await self.run(playbook, **kwargs)
        except OrchestraError as e:
            logger.error(f"{type(e).__name__}: {e}")
            return ENGINE_ERROR_EXIT_CODE, None

        if write_reports:
            try:
                write_report(result, report_path, self.settings.orchestra_reports_dir)
            except OSError as e:
                logger.error(f"Could not write run report: {e}")

        return result.exit_code, result


    @staticmethod
    def _install_signal_handlers(
        loop: asyncio.AbstractEventLoop,
        token: CancellationToken,
    ) -> list[signal.Signals]:
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on Windows event loops or outside the main thread
            with suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
                installed.append(sig)
        return installed

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"Orchestrator(scripts_root={self.settings.orchestra_scripts_root}, "
            f"playbooks_dir={self.settings.orchestra_playbooks_dir}, "
            f"max_concurrency={self.settings.orchestra_max_concurrency})"
        )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


async def run_playbook(name: str, **kwargs: Any) -> RunResult:
    """
    Convenience function to run a playbook with default settings.

    Example:
        >>> import anyio
        >>> result = anyio.run(run_playbook, "ci-validate")
    """
    orchestra = Orchestrator()
    return await orchestra.run(name, **kwargs)
