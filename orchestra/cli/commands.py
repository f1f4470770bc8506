"""Additional CLI commands for Orchestra."""

import anyio
import typer
from rich.console import Console
from rich.table import Table

from orchestra.cli.main import OVERALL_COLORS, app, fail
from orchestra.core.exceptions import OrchestraError
from orchestra.execution.results import ENGINE_ERROR_EXIT_CODE, OverallStatus

console = Console()


@app.command()
def validate(
    playbooks: list[str] | None = typer.Argument(
        None,
        help="Playbooks to validate (defaults to all)",
    ),
) -> None:
    """
    Dry-run playbooks to validate their shape without side effects.

    Exits 2 if any playbook cannot be loaded or resolved.
    """
    from orchestra.core.orchestrator import Orchestrator

    orchestra = Orchestrator()

    try:
        results = anyio.run(orchestra.validate_playbooks, playbooks or None)
    except OrchestraError as e:
        fail(e)
        return

    if not results:
        console.print("[yellow]No playbooks found[/yellow]")
        return

    table = Table(title="Playbook Validation")
    table.add_column("Playbook", style="bold")
    table.add_column("Status")
    table.add_column("Tasks", justify="right")
    table.add_column("Detail")

    invalid = 0
    not_succeeded = 0
    for name, result in results.items():
        if isinstance(result, OrchestraError):
            invalid += 1
            table.add_row(name, "[red]invalid[/red]", "-", f"{type(result).__name__}: {result}")
            continue
        if result.overall_status != OverallStatus.SUCCEEDED:
            not_succeeded += 1
        color = OVERALL_COLORS[result.overall_status]
        table.add_row(
            name,
            f"[{color}]{result.overall_status.value}[/{color}]",
            str(len(result.outcomes)),
            "",
        )

    console.print(table)

    if invalid:
        console.print(f"\n[bold red]{invalid} of {len(results)} playbooks are invalid[/bold red]")
        raise typer.Exit(ENGINE_ERROR_EXIT_CODE)
    if not_succeeded:
        raise typer.Exit(1)
    console.print(f"\n[bold green]All {len(results)} playbooks are valid[/bold green]")


@app.command()
def playbooks() -> None:
    """
    List available playbooks.
    """
    from orchestra.core.orchestrator import Orchestrator

    orchestra = Orchestrator()
    names = orchestra.loader.list_playbooks()

    if not names:
        console.print(f"[dim]No playbooks in {orchestra.loader.playbooks_dir}[/dim]")
        return

    table = Table(title="Playbooks")
    table.add_column("Name", style="bold")
    table.add_column("File", style="dim")
    for name in names:
        table.add_row(name, str(orchestra.loader.find(name)))
    console.print(table)


@app.command()
def tasks(
    tag: str | None = typer.Option(
        None,
        "--tag",
        "-t",
        help="Only tasks carrying this tag",
    ),
    number_range: str | None = typer.Option(
        None,
        "--range",
        help="Only tasks in this range, e.g. 0400-0499",
    ),
) -> None:
    """
    List discovered tasks.
    """
    from orchestra.core.orchestrator import Orchestrator

    orchestra = Orchestrator()
    try:
        registry = orchestra.registry
        selected = registry.filter(tag=tag, number_range=number_range)
    except OrchestraError as e:
        fail(e)
        return

    table = Table(title=f"Tasks ({len(selected)} of {len(registry)})")
    table.add_column("Number", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Stage")
    table.add_column("Depends On")
    table.add_column("Parallel")
    table.add_column("Tags")

    for task in selected:
        deps = ", ".join(sorted(registry.dependencies_of(task.number))) or "-"
        table.add_row(
            task.number,
            task.name,
            task.stage,
            deps[:30] + "..." if len(deps) > 30 else deps,
            "yes" if task.parallel_safe else "no",
            ", ".join(task.tags) or "-",
        )

    console.print(table)

    if registry.warnings:
        console.print(
            f"\n[yellow]{len(registry.warnings)} tasks have no manifest entry[/yellow]"
        )
