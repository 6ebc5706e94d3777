"""Main CLI entry point for autopilot."""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from autopilot.cli.commands.detect import detect_command
from autopilot.cli.commands.init import init_command
from autopilot.cli.commands.plan import plan_group
from autopilot.cli.commands.run import run_command
from autopilot.core.exceptions import AutopilotError

console = Console()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config: Optional[Path]) -> None:
    """Autopilot: autonomous feature orchestrator.

    Drives a coding agent through planning, implementation, review, tests
    and commits for one feature request.

    \b
    Examples:
        autopilot init                          # Initialize in current project
        autopilot run "Add CSV export"          # Build a feature
        autopilot run "..." --plan plan.md      # Continue an existing plan
        autopilot plan parse plan.md            # Show the tasks of a plan
        autopilot detect                        # Show project type and commands
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = config

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )
    if verbose:
        console.print("[dim]Autopilot starting with verbose output enabled[/dim]")


cli.add_command(init_command, name="init")
cli.add_command(run_command, name="run")
cli.add_command(plan_group, name="plan")
cli.add_command(detect_command, name="detect")


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli()
    except AutopilotError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Unexpected error:[/red] {e}")
        if "--verbose" in sys.argv or "-v" in sys.argv:
            console.print_exception()
        sys.exit(1)


if __name__ == "__main__":
    main()
