"""Autopilot detect command."""

from pathlib import Path

import click
from rich.console import Console

from autopilot.config.models import ProjectConfiguration
from autopilot.core.build_runner import BuildRunner, detect_project_type

console = Console()


@click.command()
@click.argument(
    "directory",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    required=False,
)
def detect_command(directory: Path) -> None:
    """Show the detected project type and its build and test commands.

    Examples:
        autopilot detect            # Current directory
        autopilot detect ../app     # Another project
    """
    runner = BuildRunner()
    config = ProjectConfiguration()
    project_type = detect_project_type(directory)

    console.print(f"[bold]Project type:[/bold] {project_type.value}")
    console.print(f"[bold]Build command:[/bold] {runner.build_command(directory, config) or '-'}")
    console.print(f"[bold]Test command:[/bold] {runner.test_command(directory, config) or '-'}")
