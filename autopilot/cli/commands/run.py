"""Autopilot run command."""

import asyncio
import signal
import time
from pathlib import Path
from typing import List, Optional, Tuple

import click
from pydantic import ValidationError
from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from autopilot.config.loader import PROJECT_DIR_NAME, load_config
from autopilot.config.models import AutoFailureHandling, AutopilotConfig
from autopilot.core.exceptions import InvalidControlSignalError, PlanParseError
from autopilot.core.phases import ExecutionPhase
from autopilot.core.plan import Plan
from autopilot.core.prompt_content import ImageAttachment
from autopilot.orchestrator.execution_context import (
    ExecutionContext,
    LogEntry,
    LogType,
    PendingQuestion,
    PendingTaskFailure,
    TaskFailureResponse,
)
from autopilot.orchestrator.plan_storage import PlanStorage
from autopilot.orchestrator.state_machine import ExecutionStateMachine
from autopilot.tracking.activity_logger import ActivityLogger, cleanup_old_sessions

console = Console()

MAX_OUTPUT_CHARS = 500

_LOG_STYLES = {
    LogType.OUTPUT: "white",
    LogType.TOOL_USE: "cyan",
    LogType.RESULT: "green",
    LogType.ERROR: "red",
    LogType.INFO: "blue",
    LogType.SEPARATOR: "dim",
}


@click.command()
@click.argument("feature", required=False)
@click.option(
    "--project",
    "-p",
    "project_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Project directory the agent works in",
)
@click.option(
    "--plan",
    "plan_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Run the pending tasks of an existing plan instead of planning",
)
@click.option("--auto-answer", is_flag=True, help="Answer agent questions automatically")
@click.option(
    "--failure-handling",
    type=click.Choice([mode.value for mode in AutoFailureHandling]),
    help="What to do when a task fails",
)
@click.option(
    "--image",
    "images",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Image attached to the first prompt (repeatable)",
)
@click.pass_context
def run_command(
    ctx: click.Context,
    feature: Optional[str],
    project_dir: Path,
    plan_file: Optional[Path],
    auto_answer: bool,
    failure_handling: Optional[str],
    images: Tuple[Path, ...],
) -> None:
    """Build a feature with the coding agent.

    The agent plans the feature, then implements, reviews, tests and commits
    each task of the plan. Questions from the agent and task failures are
    asked interactively. Press Ctrl-C to stop the run.

    Examples:
        autopilot run "Add CSV export to the reports page"
        autopilot run "Add CSV export" --project ../app --auto-answer
        autopilot run --plan plan.md    # Continue an existing plan
    """
    if not feature and plan_file is None:
        raise click.UsageError("Provide a FEATURE description or --plan FILE")

    project_dir = project_dir.resolve()
    config = _load_run_config(ctx.obj.get("config") if ctx.obj else None, project_dir)
    if auto_answer:
        config.autonomous.auto_answer_enabled = True
    if failure_handling:
        config.autonomous.auto_failure_handling = AutoFailureHandling(failure_handling)

    attachments = _load_images(images)
    plan = _load_plan(plan_file) if plan_file is not None else None

    context = ExecutionContext(config)
    context.add_listener(_print_log_entry)
    machine = ExecutionStateMachine(context)

    activity_logger = None
    if config.logging.activity_log:
        log_dir = _log_dir(config, project_dir)
        activity_logger = ActivityLogger(log_dir)
        activity_logger.attach(context)
        activity_logger.log_session_start(str(project_dir), feature or "")
        cleanup_old_sessions(log_dir, config.logging.retention_days)

    start_time = time.monotonic()
    try:
        asyncio.run(_drive(machine, project_dir, feature, plan, attachments))
    finally:
        if activity_logger is not None:
            activity_logger.log_session_end(
                int((time.monotonic() - start_time) * 1000), _run_stats(context)
            )
            activity_logger.detach()

    _print_summary(context)
    if context.phase != ExecutionPhase.COMPLETED:
        raise SystemExit(1)


def _load_run_config(config_path: Optional[Path], project_dir: Path) -> AutopilotConfig:
    if config_path is None:
        candidate = project_dir / PROJECT_DIR_NAME / "config.yaml"
        config_path = candidate if candidate.exists() else None
    return load_config(project_config_path=config_path)


def _log_dir(config: AutopilotConfig, project_dir: Path) -> Path:
    log_dir = Path(config.logging.output_dir).expanduser()
    return log_dir if log_dir.is_absolute() else project_dir / log_dir


def _load_images(paths: Tuple[Path, ...]) -> List[ImageAttachment]:
    attachments = []
    for path in paths:
        try:
            attachments.append(ImageAttachment.from_file(path))
        except (OSError, ValidationError) as e:
            raise click.ClickException(f"Cannot attach image {path}: {e}")
    return attachments


def _load_plan(plan_file: Path) -> Plan:
    try:
        plan = PlanStorage(plan_file.parent).load_plan(plan_file)
    except PlanParseError as e:
        raise click.ClickException(str(e))
    if plan is None or not plan.tasks:
        raise click.ClickException(f"No tasks found in {plan_file}")
    return plan


async def _drive(
    machine: ExecutionStateMachine,
    project_dir: Path,
    feature: Optional[str],
    plan: Optional[Plan],
    images: List[ImageAttachment],
) -> None:
    """Run the workflow, answering its blocking states from the terminal."""
    context = machine.context
    if plan is not None:
        await _with_stop_on_interrupt(
            machine, machine.start_with_existing_plan(plan, project_dir, feature)
        )
    else:
        await _with_stop_on_interrupt(machine, machine.start(project_dir, feature, images))

    while not context.phase.is_terminal:
        if context.pending_question is not None:
            answer = _ask_question(context.pending_question)
            await _with_stop_on_interrupt(machine, machine.answer_question(answer))
        elif context.pending_task_failure is not None:
            response = _ask_task_failure(context.pending_task_failure)
            await _with_stop_on_interrupt(machine, machine.respond_to_task_failure(response))
        elif context.phase == ExecutionPhase.PAUSED:
            if context.suggested_manual_command:
                console.print(
                    f"\n[bold yellow]Manual step:[/bold yellow] run this in {context.project_path}:\n"
                    f"  [bold]{context.suggested_manual_command}[/bold]"
                )
            if Confirm.ask("Continue?", default=True):
                await _with_stop_on_interrupt(machine, machine.resume())
            else:
                await machine.stop()
        else:
            break


async def _with_stop_on_interrupt(machine: ExecutionStateMachine, operation) -> None:
    """Await a control operation, turning Ctrl-C into a stop of the run."""
    loop = asyncio.get_running_loop()
    stops = []

    def request_stop() -> None:
        if machine.context.can_stop and not stops:
            console.print("\n[yellow]Stopping...[/yellow]")
            stops.append(asyncio.ensure_future(machine.stop()))

    loop.add_signal_handler(signal.SIGINT, request_stop)
    try:
        await operation
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    for stop in stops:
        try:
            await stop
        except InvalidControlSignalError:
            # The run finished before the stop arrived
            continue


def _ask_question(pending: PendingQuestion) -> str:
    question = pending.question
    console.print(f"\n[bold magenta]{question.header or 'Question'}:[/bold magenta] {question.question}")
    labels = [option.label for option in question.options]
    for number, option in enumerate(question.options, start=1):
        detail = f" - {option.description}" if option.description else ""
        console.print(f"  {number}. {option.label}{detail}")

    while True:
        answer = Prompt.ask("Your answer (number or text)").strip()
        if answer.isdigit() and 1 <= int(answer) <= len(labels):
            return labels[int(answer) - 1]
        if answer:
            return answer


def _ask_task_failure(failure: PendingTaskFailure) -> TaskFailureResponse:
    console.print(
        f"\n[bold red]Task failed:[/bold red] {failure.task_title} "
        f"({failure.failed_phase.display_name})\n[dim]{failure.error}[/dim]"
    )
    choice = Prompt.ask(
        "Retry, skip or stop?",
        choices=[response.value for response in TaskFailureResponse],
        default=TaskFailureResponse.RETRY.value,
    )
    return TaskFailureResponse(choice)


def _print_log_entry(field: str, value: object) -> None:
    if field != "logs" or not isinstance(value, LogEntry):
        return
    message = value.message
    if value.type == LogType.OUTPUT and len(message) > MAX_OUTPUT_CHARS:
        message = message[:MAX_OUTPUT_CHARS] + "…"
    style = _LOG_STYLES.get(value.type, "white")
    console.print(f"[dim]{value.phase.display_name:>26}[/dim] ", end="")
    console.print(message, style=style, markup=False, highlight=False)


def _run_stats(context: ExecutionContext) -> dict:
    tasks = context.plan.tasks if context.plan else []
    return {
        "final_phase": context.phase.value,
        "tasks_total": len(tasks),
        "tasks_completed": len(context.completed_tasks),
        "total_cost": context.total_cost,
        "total_input_tokens": context.total_input_tokens,
        "total_output_tokens": context.total_output_tokens,
    }


def _print_summary(context: ExecutionContext) -> None:
    if context.plan is not None and context.plan.tasks:
        table = Table(title="Tasks")
        table.add_column("#", justify="right", style="cyan")
        table.add_column("Title")
        table.add_column("Status")
        for task in context.plan.tasks:
            table.add_row(str(task.ordinal), task.title, task.status.value)
        console.print(table)

    color = "green" if context.phase == ExecutionPhase.COMPLETED else "red"
    console.print(f"[{color}]{context.phase.display_name}[/{color}]")
    console.print(
        f"[dim]Cost ${context.total_cost:.4f}, "
        f"{context.total_input_tokens} input / {context.total_output_tokens} output tokens[/dim]"
    )
    for error in context.errors[-5:]:
        if not error.is_recoverable:
            console.print(f"[red]{error.message}[/red]")
