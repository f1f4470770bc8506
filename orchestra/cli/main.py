"""Main CLI entry point using Typer."""

from pathlib import Path

import anyio
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from orchestra import __version__
from orchestra.core.exceptions import OrchestraError
from orchestra.execution.results import (
    ENGINE_ERROR_EXIT_CODE,
    OverallStatus,
    RunResult,
    TaskOutcome,
    TaskStatus,
)
from orchestra.planning.models import Plan

app = typer.Typer(
    name="orchestra",
    help="Orchestra - numbered-script playbook engine",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_COLORS = {
    TaskStatus.SUCCEEDED: "green",
    TaskStatus.PLANNED: "cyan",
    TaskStatus.FAILED: "red",
    TaskStatus.SKIPPED: "yellow",
    TaskStatus.CANCELLED: "magenta",
}

OVERALL_COLORS = {
    OverallStatus.SUCCEEDED: "green",
    OverallStatus.PARTIAL_FAILURE: "yellow",
    OverallStatus.FAILED: "red",
    OverallStatus.ABORTED: "red",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]Orchestra[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Orchestra - run numbered automation scripts from playbooks.

    Resolves playbooks into dependency-ordered stages and executes them
    sequentially or in parallel with a single CI-friendly exit code.
    """
    pass


# =============================================================================
# HELPERS
# =============================================================================


def parse_variables(values: list[str] | None) -> dict[str, str]:
    """Parse repeated ``KEY=VALUE`` options into a mapping."""
    variables: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--var")
        variables[key.strip()] = value
    return variables


def fail(error: OrchestraError) -> None:
    """Report a fatal engine error and exit with the engine error code."""
    console.print(f"[bold red]{type(error).__name__}:[/bold red] {error}")
    raise typer.Exit(ENGINE_ERROR_EXIT_CODE)


def print_outcome(outcome: TaskOutcome) -> None:
    color = STATUS_COLORS.get(outcome.status, "white")
    detail = outcome.error.message if outcome.error else (outcome.status_line or "")
    console.print(
        f"  [{color}]{outcome.status.value:<9}[/{color}] "
        f"{outcome.task_number} {outcome.task_name} [dim]{detail}[/dim]"
    )


def plan_table(plan: Plan) -> Table:
    table = Table(title=f"Plan: {plan.playbook}")
    table.add_column("Stage", style="cyan")
    table.add_column("Parallel")
    table.add_column("Task", style="bold")
    table.add_column("Arguments")
    table.add_column("Depends On")

    for index, stage in enumerate(plan.stages):
        for position, inv in enumerate(stage.invocations):
            table.add_row(
                f"{index}: {stage.name}" if position == 0 else "",
                ("yes" if stage.parallel_eligible else "no") if position == 0 else "",
                inv.task.display_name,
                " ".join(inv.arguments) or "-",
                ", ".join(inv.dependencies) or "-",
            )
    return table


def result_table(result: RunResult) -> Table:
    table = Table(title=f"Run {result.run_id[:8]}: {result.playbook}")
    table.add_column("Task", style="bold")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Detail")

    for outcome in result.outcomes:
        color = STATUS_COLORS.get(outcome.status, "white")
        detail = outcome.error.message if outcome.error else (outcome.status_line or "")
        table.add_row(
            f"{outcome.task_number}_{outcome.task_name}",
            outcome.stage,
            f"[{color}]{outcome.status.value}[/{color}]",
            "-" if outcome.exit_code is None else str(outcome.exit_code),
            f"{outcome.duration_seconds:.1f}s",
            detail[:60] + "..." if len(detail) > 60 else detail,
        )
    return table


# =============================================================================
# COMMANDS
# =============================================================================


@app.command()
def run(
    playbook: str | None = typer.Argument(
        None,
        help="Playbook name or path to a playbook file",
    ),
    task: str | None = typer.Option(
        None,
        "--task",
        "-n",
        help="Ad-hoc selection instead of a playbook, e.g. 0100,0400-0499",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Resolve and validate without launching any task",
    ),
    sequential: bool = typer.Option(
        False,
        "--sequential",
        "-s",
        help="Run every task one at a time",
    ),
    concurrency: int | None = typer.Option(
        None,
        "--concurrency",
        "-c",
        min=1,
        help="Worker pool size for parallel stages",
    ),
    continue_on_error: bool = typer.Option(
        False,
        "--continue-on-error",
        help="Keep going after task failures by default",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        min=0.001,
        help="Per-task timeout in seconds",
    ),
    run_timeout: float | None = typer.Option(
        None,
        "--run-timeout",
        min=0.001,
        help="Cancel the whole run after this many seconds",
    ),
    variables: list[str] | None = typer.Option(
        None,
        "--var",
        help="Variable override as KEY=VALUE (repeatable)",
    ),
    report: Path | None = typer.Option(
        None,
        "--report",
        "-r",
        help="Write the run report to this path",
    ),
) -> None:
    """
    Run a playbook or an ad-hoc task selection.

    Exit code 0 when every task succeeded, 1 otherwise, 2 when the run could
    not start (unknown playbook, cycle, missing task...).

    Example:
        orchestra run ci-validate --dry-run
        orchestra run --task 0400-0499 -c 8
    """
    if (playbook is None) == (task is None):
        console.print("[bold red]Give either a playbook or --task, not both[/bold red]")
        raise typer.Exit(ENGINE_ERROR_EXIT_CODE)

    overrides = parse_variables(variables)
    target = playbook or f"adhoc:{task}"

    console.print(
        Panel(
            f"[bold]Target:[/bold] {target}\n"
            f"[bold]Mode:[/bold] {'sequential' if sequential else 'parallel'}"
            f"{' (dry run)' if dry_run else ''}",
            title="[bold blue]Orchestra[/bold blue]",
            border_style="blue",
        )
    )

    async def execute() -> tuple[int, RunResult | None]:
        from orchestra.core.orchestrator import Orchestrator

        orchestra = Orchestrator()
        return await orchestra.execute(
            playbook,
            selection=task,
            overrides=overrides,
            dry_run=dry_run,
            sequential=sequential,
            max_concurrency=concurrency,
            continue_on_error=True if continue_on_error else None,
            timeout=timeout,
            run_timeout=run_timeout,
            report_path=report,
            on_outcome=print_outcome,
        )

    exit_code, result = anyio.run(execute)

    if result is None:
        console.print(f"\n[bold red]Run for {target} could not start[/bold red]")
        raise typer.Exit(exit_code)

    console.print()
    console.print(result_table(result))

    color = OVERALL_COLORS[result.overall_status]
    console.print(
        f"\nOverall Status: [{color}]{result.overall_status.value}[/{color}] "
        f"[dim](exit code {exit_code}, {result.duration_seconds:.1f}s)[/dim]"
    )
    raise typer.Exit(exit_code)


@app.command()
def plan(
    playbook: str | None = typer.Argument(
        None,
        help="Playbook name or path to a playbook file",
    ),
    task: str | None = typer.Option(
        None,
        "--task",
        "-n",
        help="Ad-hoc selection instead of a playbook",
    ),
    variables: list[str] | None = typer.Option(
        None,
        "--var",
        help="Variable override as KEY=VALUE (repeatable)",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Also write the plan as JSON to this file",
    ),
) -> None:
    """
    Show the stages a playbook resolves to, without running anything.
    """
    if (playbook is None) == (task is None):
        console.print("[bold red]Give either a playbook or --task, not both[/bold red]")
        raise typer.Exit(ENGINE_ERROR_EXIT_CODE)

    from orchestra.core.orchestrator import Orchestrator

    orchestra = Orchestrator()
    try:
        resolved = orchestra.plan(playbook, selection=task, overrides=parse_variables(variables))
    except OrchestraError as e:
        fail(e)
        return

    if not resolved.stages:
        console.print(f"[yellow]Playbook {resolved.playbook} has no tasks[/yellow]")
    else:
        console.print(plan_table(resolved))

    if output:
        import json

        output.write_text(json.dumps(resolved.to_dict(), indent=2))
        console.print(f"[green]Saved to {output}[/green]")


if __name__ == "__main__":
    app()
