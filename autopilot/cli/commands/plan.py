"""Autopilot plan commands."""

from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from autopilot.core.exceptions import PlanParseError
from autopilot.orchestrator.plan_storage import PlanStorage

console = Console()


@click.group()
def plan_group() -> None:
    """Inspect plan documents."""


@plan_group.command("parse")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def parse_command(plan_file: Path) -> None:
    """Show the tasks of a plan document.

    Examples:
        autopilot plan parse plan.md
    """
    try:
        plan = PlanStorage(plan_file.parent).load_plan(plan_file)
    except PlanParseError as e:
        raise click.ClickException(str(e))

    if plan is None or not plan.tasks:
        console.print(f"[yellow]No tasks found in {plan_file}[/yellow]")
        return

    table = Table(title=f"Plan: {plan_file.name}")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Description")
    table.add_column("Criteria", justify="right")

    for task in plan.tasks:
        table.add_row(
            str(task.ordinal), task.title, task.description or "-", str(len(task.subtasks))
        )

    console.print(table)
    console.print(f"[dim]{len(plan.tasks)} task(s)[/dim]")
