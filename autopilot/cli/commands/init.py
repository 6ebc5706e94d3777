"""Autopilot init command."""

from pathlib import Path

import click
from rich.console import Console

from autopilot.config.loader import PROJECT_DIR_NAME, create_default_config, save_config
from autopilot.core.exceptions import ConfigurationError

console = Console()

GITIGNORE_CONTENT = """# Autopilot generated files
logs/
*.tmp
*.lock
"""


@click.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Force initialization even if .autopilot directory already exists",
)
def init_command(force: bool) -> None:
    """Initialize autopilot in the current project.

    Creates a .autopilot directory with the default configuration and a
    directory for run logs.

    Examples:
        autopilot init                # Initialize with default settings
        autopilot init --force        # Reinitialize existing project
    """
    project_root = Path.cwd()
    project_dir = project_root / PROJECT_DIR_NAME

    if project_dir.exists() and not force:
        console.print(
            f"[yellow]Autopilot already initialized in {project_root}[/yellow]\n"
            "Use --force to reinitialize"
        )
        return

    try:
        project_dir.mkdir(exist_ok=True)
        (project_dir / "logs").mkdir(exist_ok=True)

        config_path = project_dir / "config.yaml"
        if not config_path.exists() or force:
            save_config(create_default_config(), config_path)

        gitignore_path = project_dir / ".gitignore"
        if not gitignore_path.exists() or force:
            gitignore_path.write_text(GITIGNORE_CONTENT, encoding="utf-8")
    except (OSError, ConfigurationError) as e:
        console.print(f"[red]Failed to initialize autopilot:[/red] {e}")
        raise click.ClickException(f"Initialization failed: {e}")

    console.print(f"[green]✓[/green] Autopilot initialized in {project_root}")
    console.print(f"[dim]Configuration:[/dim] {config_path}")
    console.print("\n[bold]Next steps:[/bold]")
    console.print(f"1. Review and customize {PROJECT_DIR_NAME}/config.yaml")
    console.print('2. Build a feature: autopilot run "Describe the feature"')
