"""Execution state machine driving one workflow instance.

The machine owns an ExecutionContext and moves it through the phases of
``autopilot.core.phases``: plan generation and refinement, then for every
task implementation, commit, optional build, review, tests and a context
reset. Control signals (pause, resume, stop, answers and failure decisions)
arrive from outside while the loop is running; the loop acts on them at
step boundaries.
"""

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from autopilot.config.models import CommandExecutionMode
from autopilot.core.agent_executor import AgentExecutor, AgentResult
from autopilot.core.build_runner import BuildRunner
from autopilot.core.exceptions import (
    AgentProcessError,
    AgentResultError,
    AutopilotError,
    BuildTestError,
    ConfigurationError,
    GitOperationError,
    InvalidControlSignalError,
    PlanParseError,
    ProcessInterruptedError,
    RetryExhaustedError,
    StateTransitionError,
)
from autopilot.core.git_utils import CommitResult, GitUtils
from autopilot.core.output_parser import OutputParser
from autopilot.core.phases import (
    HANDOFF_PHASES,
    INACTIVE_PHASES,
    QUESTION_PHASES,
    TASK_PHASES,
    ExecutionPhase,
    PermissionMode,
    is_valid_transition,
)
from autopilot.core.plan import Plan, PlanTask, TaskStatus
from autopilot.core.prompt_content import ImageAttachment, PromptContent
from autopilot.core.prompt_loader import PromptLoader
from autopilot.core.stream_messages import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)

from .context_budget import ContinuationSummary, default_summary, summary_from_agent_output
from .execution_context import (
    ExecutionContext,
    LogType,
    PendingQuestion,
    PendingTaskFailure,
    QuestionAnswer,
    TaskFailureResponse,
)
from .fallback_policy import FallbackPolicy, TaskFailureDecision
from .plan_storage import PlanStorage, parse_plan
from .retry_strategy import RetryStrategy, SleepFunction

logger = logging.getLogger(__name__)

COMMIT_MESSAGES: Dict[ExecutionPhase, str] = {
    ExecutionPhase.COMMITTING_IMPLEMENTATION: "feat: implement {title}",
    ExecutionPhase.COMMITTING_REVIEW: "refactor: code review fixes for {title}",
    ExecutionPhase.COMMITTING_TESTS: "test: add tests for {title}",
}

UI_KEYWORDS = (
    "view", "ui", "layout", "animation", "style", "color", "font", "icon",
    "image", "button", "label", "text", "visual", "display", "indicator",
    "sheet", "modal", "navigation", "sidebar",
)

_UI_PATTERN = re.compile(r"\b(" + "|".join(UI_KEYWORDS) + r")s?\b", re.IGNORECASE)

# Output tail handed to the fix prompts
MAX_ERROR_OUTPUT = 20_000


def is_ui_task(task: PlanTask) -> bool:
    """Heuristic: does the task look like user-interface work?"""
    return bool(_UI_PATTERN.search(task.title) or _UI_PATTERN.search(task.description))


def format_clarifications(clarifications: Iterable[QuestionAnswer]) -> str:
    return "\n\n".join(f"Q: {item.question}\nA: {item.answer}" for item in clarifications)


@dataclass
class PhaseTransition:
    """One recorded phase change."""

    from_phase: ExecutionPhase
    to_phase: ExecutionPhase
    timestamp: datetime = field(default_factory=datetime.utcnow)


class ExecutionStateMachine:
    """
    Drives an ExecutionContext through the workflow.

    This class provides:
    - Validated phase transitions with history
    - Agent invocations with retry, permission modes and session resume
    - Question, task failure and pause handling that block the loop
    - Context handoff to a new agent session when the window runs low
    - Build, test and commit steps with fallback to manual execution
    """

    def __init__(
        self,
        context: ExecutionContext,
        executor: Optional[AgentExecutor] = None,
        git: Optional[GitUtils] = None,
        build_runner: Optional[BuildRunner] = None,
        plan_storage: Optional[PlanStorage] = None,
        prompt_loader: Optional[PromptLoader] = None,
        sleep: Optional[SleepFunction] = None,
    ):
        """
        Initialize the state machine.

        Args:
            context: Context this machine owns
            executor: Agent executor (built from the context configuration if None)
            git: Git helper (creates default if None)
            build_runner: Build and test runner (creates default if None)
            plan_storage: Plan file storage (one per project path if None)
            prompt_loader: Prompt templates (packaged prompts if None)
            sleep: Coroutine used for retry delays (interruptible sleep if None)
        """
        self.context = context
        agent_config = context.config.agent
        self.executor = executor or AgentExecutor(
            executable=agent_config.executable, extra_args=agent_config.extra_args
        )
        self.git = git or GitUtils()
        self.build_runner = build_runner or BuildRunner()
        self.prompts = prompt_loader or PromptLoader()
        self.fallback = FallbackPolicy(context)
        self._plan_storage = plan_storage
        self._sleep = sleep or self._interruptible_sleep

        self._loop_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._history: List[PhaseTransition] = []
        self._reset_signals()

    def _reset_signals(self) -> None:
        self._pause_requested = False
        self._stop_requested = False
        self._question_signal: Optional[PendingQuestion] = None
        self._pending_answer: Optional[str] = None
        self._manual_step_pending = False
        self._handoff_resume_phase: Optional[ExecutionPhase] = None
        self._last_check_passed = True

    # Introspection

    @property
    def phase(self) -> ExecutionPhase:
        return self.context.phase

    @property
    def history(self) -> List[PhaseTransition]:
        return list(self._history)

    @property
    def plan_storage(self) -> PlanStorage:
        if self._plan_storage is not None:
            return self._plan_storage
        return PlanStorage(self.context.project_path)

    # Control signals

    async def start(
        self,
        project_path: Optional[Union[str, Path]] = None,
        feature_description: Optional[str] = None,
        images: Optional[List[ImageAttachment]] = None,
        clarifications: Optional[List[QuestionAnswer]] = None,
    ) -> None:
        """
        Start a new feature run and drive it until it completes or blocks.

        Args:
            project_path: Project directory (keeps the current one if None)
            feature_description: What to build (keeps the current one if None)
            images: Images attached to the first prompt
            clarifications: Answers gathered before the run

        Raises:
            InvalidControlSignalError: If a run is already in progress
            ConfigurationError: If the project path, feature or agent is unusable
        """
        self._prepare_run(project_path, feature_description, images, clarifications)
        self._validate_run(require_feature=True)

        async with self._loop_lock:
            self._reset_signals()
            self.context.start_time = datetime.utcnow()
            self.context.add_log(
                LogType.INFO, f"Starting feature: {self.context.feature_description}"
            )
            logger.info("Starting workflow in %s", self.context.project_path)
            self._transition(ExecutionPhase.GENERATING_INITIAL_PLAN)
            await self._run_loop()

    async def start_with_existing_plan(
        self,
        plan: Plan,
        project_path: Optional[Union[str, Path]] = None,
        feature_description: Optional[str] = None,
    ) -> None:
        """
        Skip planning and run the pending tasks of an existing plan.

        Raises:
            InvalidControlSignalError: If a run is already in progress
            ConfigurationError: If the project path or agent is unusable
        """
        self._prepare_run(project_path, feature_description, None, None)
        self._validate_run(require_feature=False)

        async with self._loop_lock:
            self._reset_signals()
            self.context.plan = plan
            self.context.start_time = datetime.utcnow()
            index = plan.first_pending_index()
            if index is None:
                self.context.add_log(LogType.INFO, "The plan has no pending tasks")
                self._transition(ExecutionPhase.COMPLETED)
                return
            self.context.add_log(
                LogType.INFO, f"Running existing plan with {len(plan.pending_tasks)} pending task(s)"
            )
            self._start_task(index)
            await self._run_loop()

    def pause(self) -> None:
        """
        Ask the running loop to pause at the next step boundary.

        The running agent is interrupted; its step is repeated on resume.

        Raises:
            InvalidControlSignalError: If nothing is running or the run is blocked
        """
        if not self.context.can_pause:
            raise InvalidControlSignalError(
                f"Cannot pause while {self.context.phase.display_name}"
            )
        self._pause_requested = True
        self.context.add_log(LogType.INFO, "Pause requested")
        self.executor.interrupt()
        self._wake.set()

    async def resume(self) -> None:
        """
        Continue a paused run from the phase it was paused in.

        A pause caused by a manual command step counts as that step done.

        Raises:
            InvalidControlSignalError: If the run is not paused
        """
        if not self.context.can_resume:
            raise InvalidControlSignalError("Execution is not paused")

        async with self._loop_lock:
            target = self.context.phase_before_pause
            if target is None:
                raise InvalidControlSignalError("No phase to resume")
            self.context.phase_before_pause = None
            self._pause_requested = False
            self._transition(target)
            self.context.add_log(LogType.INFO, f"Resumed: {target.display_name}")

            if self._manual_step_pending:
                self._manual_step_pending = False
                self.context.suggested_manual_command = None
                self._last_check_passed = True
                self.context.add_log(LogType.INFO, "Manual step marked as done")
                self._advance_phase()

            await self._run_loop()

    async def stop(self) -> None:
        """
        Terminate the run: kill the agent and any command, and fail the run.

        Raises:
            InvalidControlSignalError: If nothing is running
        """
        if not self.context.can_stop:
            raise InvalidControlSignalError("Nothing to stop")

        self._stop_requested = True
        self._wake.set()
        self.executor.terminate()
        self.build_runner.terminate()
        await self.executor.wait_stopped()

        self._manual_step_pending = False
        self.context.suggested_manual_command = None
        self._fail_run("Execution stopped by user")

    async def answer_question(self, answer: str) -> None:
        """
        Answer the pending agent question and continue the phase that asked it.

        Raises:
            InvalidControlSignalError: If no question is pending or the answer is empty
        """
        question = self.context.pending_question
        if self.context.phase != ExecutionPhase.WAITING_FOR_USER or question is None:
            raise InvalidControlSignalError("No question is waiting for an answer")
        answer = answer.strip()
        if not answer:
            raise InvalidControlSignalError("Answer cannot be empty")

        async with self._loop_lock:
            self.context.pending_question = None
            self._record_answer(question, answer)
            self._transition(question.raised_in_phase)
            await self._run_loop()

    async def respond_to_task_failure(
        self, response: Union[TaskFailureResponse, str]
    ) -> None:
        """
        Decide what to do about a task failure that is waiting for the user.

        Raises:
            InvalidControlSignalError: If no task failure is pending
        """
        failure = self.context.pending_task_failure
        if failure is None:
            raise InvalidControlSignalError("No task failure is waiting for a decision")
        response = TaskFailureResponse(response)

        async with self._loop_lock:
            self.context.pending_task_failure = None
            if response == TaskFailureResponse.RETRY:
                self.context.add_log(LogType.INFO, f"Retrying task: {failure.task_title}")
            elif response == TaskFailureResponse.SKIP:
                self._skip_current_task("skipped by user")
            else:
                self._fail_run(f"Stopped after task failure: {failure.task_title}")
                return
            await self._run_loop()

    def set_manual_mode(self, manual: bool) -> None:
        """Switch between manual and autonomous command execution."""
        self.fallback.set_manual_mode(manual)

    def reset_fallback(self) -> None:
        """Leave fallback mode and return to the configured command mode."""
        self.fallback.reset()
        self.context.add_log(LogType.INFO, "Fallback mode reset")

    # Run setup

    def _prepare_run(
        self,
        project_path: Optional[Union[str, Path]],
        feature_description: Optional[str],
        images: Optional[List[ImageAttachment]],
        clarifications: Optional[List[QuestionAnswer]],
    ) -> None:
        context = self.context
        if context.phase not in (
            ExecutionPhase.IDLE,
            ExecutionPhase.COMPLETED,
            ExecutionPhase.FAILED,
        ):
            raise InvalidControlSignalError("A workflow is already running")

        if context.phase != ExecutionPhase.IDLE:
            context.reset_for_new_feature()
            self._history.clear()
        if project_path is not None:
            context.project_path = Path(project_path)
        if feature_description is not None:
            context.feature_description = feature_description
        if images:
            context.attached_images = list(images)
        if clarifications:
            context.clarifications = list(clarifications)

    def _validate_run(self, require_feature: bool) -> None:
        context = self.context
        try:
            if context.project_path is None:
                raise ConfigurationError("No project directory selected")
            if not Path(context.project_path).is_dir():
                raise ConfigurationError(
                    f"Project directory does not exist: {context.project_path}"
                )
            if require_feature and not context.feature_description.strip():
                raise ConfigurationError("Feature description cannot be empty")
            self.executor.resolve_executable()
        except ConfigurationError as e:
            context.add_error(str(e), is_recoverable=False)
            raise

    # Main loop

    async def _run_loop(self) -> None:
        context = self.context
        while True:
            if self._stop_requested:
                return
            if self._pause_requested:
                self._enter_pause(step_completed=False)
                return

            phase = context.phase
            if phase in INACTIVE_PHASES or context.is_blocked:
                return

            if context.is_handoff_in_progress and phase in HANDOFF_PHASES:
                self._handoff_resume_phase = phase
                self._transition(ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION)
                continue

            error: Optional[Exception] = None
            try:
                await self._execute_phase(phase)
            except Exception as e:
                error = e

            if self._stop_requested:
                return
            if self._question_signal is not None:
                if await self._handle_question_signal():
                    continue
                return
            if self._manual_step_pending and error is None:
                self._enter_manual_wait()
                return
            if self._pause_requested:
                self._enter_pause(step_completed=error is None)
                return

            if error is not None:
                if (
                    context.is_handoff_in_progress
                    and phase in HANDOFF_PHASES
                    and isinstance(error, (AgentProcessError, RetryExhaustedError))
                ):
                    # Interrupted for the handoff, which runs next iteration
                    continue
                if await self._handle_phase_error(phase, error):
                    continue
                return

            try:
                self._advance_phase()
            except AutopilotError as e:
                self._fail_run("Workflow error", e)
                return

    async def _execute_phase(self, phase: ExecutionPhase) -> None:
        handlers = {
            ExecutionPhase.GENERATING_INITIAL_PLAN: self._generate_plan,
            ExecutionPhase.REWRITING_PLAN: self._rewrite_plan,
            ExecutionPhase.EXECUTING_TASK: self._execute_task,
            ExecutionPhase.COMMITTING_IMPLEMENTATION: self._commit_phase_changes,
            ExecutionPhase.RUNNING_BUILD: self._run_build,
            ExecutionPhase.FIXING_BUILD_ERRORS: self._fix_build_errors,
            ExecutionPhase.REVIEWING_CODE: self._review_code,
            ExecutionPhase.COMMITTING_REVIEW: self._commit_phase_changes,
            ExecutionPhase.WRITING_TESTS: self._write_tests,
            ExecutionPhase.COMMITTING_TESTS: self._commit_phase_changes,
            ExecutionPhase.RUNNING_TESTS: self._run_tests,
            ExecutionPhase.FIXING_TEST_ERRORS: self._fix_test_errors,
            ExecutionPhase.CLEARING_CONTEXT: self._clear_context,
            ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION: self._hand_off_context,
        }
        handler = handlers.get(phase)
        if handler is None:
            raise StateTransitionError(f"No step defined for phase {phase.value}")
        await handler()

    def _advance_phase(self) -> None:
        """Move on after the step of the current phase succeeded."""
        context = self.context
        phase = context.phase
        autonomous = context.autonomous_config
        project = context.project_configuration

        if phase == ExecutionPhase.GENERATING_INITIAL_PLAN:
            self._transition(ExecutionPhase.REWRITING_PLAN)
        elif phase == ExecutionPhase.REWRITING_PLAN:
            self._start_task(context.plan.first_pending_index() if context.plan else None)
        elif phase == ExecutionPhase.EXECUTING_TASK:
            self._transition(ExecutionPhase.COMMITTING_IMPLEMENTATION)
        elif phase == ExecutionPhase.COMMITTING_IMPLEMENTATION:
            if autonomous.run_build_after_commit:
                self._transition(ExecutionPhase.RUNNING_BUILD)
            else:
                self._transition(ExecutionPhase.REVIEWING_CODE)
        elif phase == ExecutionPhase.RUNNING_BUILD:
            if self._last_check_passed:
                self._transition(ExecutionPhase.REVIEWING_CODE)
            elif context.build_attempts <= project.max_build_fix_attempts:
                self._transition(ExecutionPhase.FIXING_BUILD_ERRORS)
            else:
                self._fail_run(
                    f"Build still failing after {project.max_build_fix_attempts} fix attempt(s)"
                )
        elif phase == ExecutionPhase.FIXING_BUILD_ERRORS:
            self._transition(ExecutionPhase.RUNNING_BUILD)
        elif phase == ExecutionPhase.REVIEWING_CODE:
            self._transition(ExecutionPhase.COMMITTING_REVIEW)
        elif phase == ExecutionPhase.COMMITTING_REVIEW:
            task = context.current_task
            if autonomous.skip_tests_for_ui_tasks and task is not None and is_ui_task(task):
                context.add_log(LogType.INFO, f"Skipping tests for UI task: {task.title}")
                self._transition(ExecutionPhase.CLEARING_CONTEXT)
            else:
                self._transition(ExecutionPhase.WRITING_TESTS)
        elif phase == ExecutionPhase.WRITING_TESTS:
            self._transition(ExecutionPhase.COMMITTING_TESTS)
        elif phase == ExecutionPhase.COMMITTING_TESTS:
            if autonomous.run_tests_after_commit:
                self._transition(ExecutionPhase.RUNNING_TESTS)
            else:
                self._transition(ExecutionPhase.CLEARING_CONTEXT)
        elif phase == ExecutionPhase.RUNNING_TESTS:
            if self._last_check_passed:
                self._transition(ExecutionPhase.CLEARING_CONTEXT)
            elif context.test_attempts <= project.max_test_fix_attempts:
                self._transition(ExecutionPhase.FIXING_TEST_ERRORS)
            else:
                self._fail_run(
                    f"Tests still failing after {project.max_test_fix_attempts} fix attempt(s)"
                )
        elif phase == ExecutionPhase.FIXING_TEST_ERRORS:
            self._transition(ExecutionPhase.RUNNING_TESTS)
        elif phase == ExecutionPhase.CLEARING_CONTEXT:
            if context.advance_to_next_task():
                self._start_task(context.current_task_index)
            else:
                self._complete_run()
        elif phase == ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION:
            target = self._handoff_resume_phase or ExecutionPhase.EXECUTING_TASK
            self._handoff_resume_phase = None
            self._transition(target)

    def _transition(self, to_phase: ExecutionPhase) -> None:
        from_phase = self.context.phase
        if from_phase == to_phase:
            return
        if not is_valid_transition(from_phase, to_phase):
            raise StateTransitionError(
                f"Invalid transition from {from_phase.value} to {to_phase.value}"
            )
        self._history.append(PhaseTransition(from_phase, to_phase))
        self.context.phase = to_phase
        logger.debug("Phase %s -> %s", from_phase.value, to_phase.value)

    def _start_task(self, index: Optional[int]) -> None:
        context = self.context
        if index is None:
            self._complete_run()
            return
        context.current_task_index = index
        context.task_failure_count = 0
        context.build_attempts = 0
        context.test_attempts = 0
        context.update_task_status(index, TaskStatus.IN_PROGRESS)
        task = context.current_task
        context.add_log(LogType.INFO, f"Starting task {task.ordinal}: {task.title}")
        self._transition(ExecutionPhase.EXECUTING_TASK)

    def _complete_run(self) -> None:
        context = self.context
        tasks = context.plan.tasks if context.plan else []
        completed = sum(1 for task in tasks if task.status == TaskStatus.COMPLETED)
        skipped = sum(1 for task in tasks if task.status == TaskStatus.SKIPPED)
        self._transition(ExecutionPhase.COMPLETED)
        context.add_log(
            LogType.INFO,
            f"All tasks finished: {completed} completed, {skipped} skipped "
            f"(total cost ${context.total_cost:.4f})",
        )
        logger.info("Workflow completed in %s", context.project_path)

    def _fail_run(self, message: str, error: Optional[BaseException] = None) -> None:
        context = self.context
        task = context.current_task
        if task is not None and task.status == TaskStatus.IN_PROGRESS:
            context.update_task_status(context.current_task_index, TaskStatus.FAILED)
        context.pending_question = None
        context.pending_task_failure = None
        context.add_error(message, error, is_recoverable=False)
        self._transition(ExecutionPhase.FAILED)
        logger.error("Workflow failed: %s", message)

    def _enter_pause(self, step_completed: bool) -> None:
        self._pause_requested = False
        if step_completed:
            self._advance_phase()
        phase = self.context.phase
        if phase in INACTIVE_PHASES:
            return
        self.context.phase_before_pause = phase
        self._transition(ExecutionPhase.PAUSED)
        self.context.add_log(LogType.INFO, f"Paused during {phase.display_name}")

    def _enter_manual_wait(self) -> None:
        self._pause_requested = False
        phase = self.context.phase
        self.context.phase_before_pause = phase
        self._transition(ExecutionPhase.PAUSED)
        self.context.add_log(
            LogType.INFO,
            f"Run this command in {self.context.project_path}, then resume: "
            f"{self.context.suggested_manual_command}",
        )

    async def _interruptible_sleep(self, delay: float) -> None:
        self._wake.clear()
        if self._stop_requested or self._pause_requested:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # Failure handling

    async def _handle_phase_error(self, phase: ExecutionPhase, error: Exception) -> bool:
        """Apply the failure policy of a phase; True means keep looping."""
        if isinstance(error, ConfigurationError):
            self._fail_run("Agent is not configured correctly", error)
            return False

        if phase in TASK_PHASES:
            return await self._handle_task_failure(phase, error)

        if phase == ExecutionPhase.FIXING_BUILD_ERRORS:
            self.context.add_error(f"{phase.display_name} failed", error)
            self._transition(ExecutionPhase.RUNNING_BUILD)
            return True
        if phase == ExecutionPhase.FIXING_TEST_ERRORS:
            self.context.add_error(f"{phase.display_name} failed", error)
            self._transition(ExecutionPhase.RUNNING_TESTS)
            return True

        self._fail_run(f"{phase.display_name} failed", error)
        return False

    async def _handle_task_failure(self, phase: ExecutionPhase, error: Exception) -> bool:
        context = self.context
        task = context.current_task
        label = f"Task {task.ordinal}" if task is not None else "Task"
        context.add_error(f"{label} failed during {phase.display_name}", error)

        decision = self.fallback.decide_task_failure()
        if decision == TaskFailureDecision.PAUSE_FOR_USER:
            context.pending_task_failure = PendingTaskFailure(
                task_id=task.id if task is not None else "",
                task_title=task.title if task is not None else "",
                error=str(error),
                failed_phase=phase,
            )
            context.add_log(LogType.INFO, f"{label} failed; waiting for a decision")
            return False

        failures = context.task_failure_count
        if decision == TaskFailureDecision.RETRY:
            delay = self.fallback.task_retry_delay()
            context.add_log(
                LogType.INFO,
                f"Retrying {label.lower()} ({failures}/{context.autonomous_config.max_task_retries}) "
                f"in {delay:g}s",
            )
            await self._sleep(delay)
            return True

        if decision == TaskFailureDecision.SKIP:
            self._skip_current_task(f"failed {failures} time(s)")
            return True

        self._fail_run(f"{label} failed {failures} time(s); stopping", error)
        return False

    def _skip_current_task(self, reason: str) -> None:
        context = self.context
        task = context.current_task
        if task is not None:
            context.update_task_status(context.current_task_index, TaskStatus.SKIPPED)
            context.add_log(LogType.INFO, f"Skipping task {task.ordinal}: {task.title} ({reason})")
        context.task_failure_count = 0
        self._transition(ExecutionPhase.CLEARING_CONTEXT)

    # Questions

    async def _handle_question_signal(self) -> bool:
        """Answer or surface a question; True means keep looping."""
        question = self._question_signal
        self._question_signal = None

        if self.context.autonomous_config.auto_answer_enabled:
            answer = await self._auto_answer(question)
            if self._stop_requested:
                return False
            if answer is not None:
                self._record_answer(question, answer)
                if self._pause_requested:
                    self._enter_pause(step_completed=False)
                    return False
                return True

        self._pause_requested = False
        self.context.pending_question = question
        self._transition(ExecutionPhase.WAITING_FOR_USER)
        self.context.add_log(LogType.INFO, f"Agent asked: {question.question.question}")
        return False

    def _on_question(self, block: ToolUseBlock) -> None:
        payload = block.ask_user_question()
        if payload is None:
            self.context.add_log(LogType.INFO, "Ignoring a question that could not be decoded")
            return
        phase = self.context.phase
        if phase not in QUESTION_PHASES or self._question_signal is not None:
            return
        self._question_signal = PendingQuestion(
            tool_use_id=block.id, questions=payload.questions, raised_in_phase=phase
        )
        self.executor.interrupt()

    def _record_answer(self, question: PendingQuestion, answer: str) -> None:
        text = question.question.question
        self.context.clarifications = [
            *self.context.clarifications,
            QuestionAnswer(question=text, answer=answer),
        ]
        self._pending_answer = (
            f'You asked: "{text}"\n'
            f"Answer: {answer}\n"
            "Continue with this answer in mind."
        )
        self.context.add_log(LogType.INFO, f"Answer: {answer}")

    async def _auto_answer(self, question: PendingQuestion) -> Optional[str]:
        context = self.context
        asked = question.question
        labels = [option.label for option in asked.options]
        options_list = "\n".join(
            f"- {option.label}: {option.description}" if option.description else f"- {option.label}"
            for option in asked.options
        )
        task = context.current_task
        if task is not None:
            task_context = f"Working on task {task.ordinal}: {task.title}\n{task.description}"
        else:
            task_context = f"Planning the feature: {context.feature_description}"
        plan_overview = ""
        if context.plan is not None and context.plan.tasks:
            plan_overview = "## Plan\n" + "\n".join(
                f"{item.ordinal}. {item.title} [{item.status.value}]" for item in context.plan.tasks
            )

        prompt = self.prompts.render_template(
            "smart_answer",
            {
                "project_context": context.autonomous_config.project_context
                or context.feature_description,
                "task_context": task_context,
                "plan_overview": plan_overview,
                "question_header": asked.header or "Question",
                "question_text": asked.question,
                "options_list": options_list or "(free-form answer)",
            },
        )
        try:
            result = await self.executor.execute(
                prompt,
                working_dir=context.project_path,
                permission_mode=PermissionMode.PLAN,
                timeout=context.timeout_configuration.plan_mode_timeout,
            )
            self._record_result(result, track_session=False)
            data = OutputParser.extract_json(result.result, strict=False)
            choice = data.get("choice")
            if isinstance(choice, str):
                for label in labels:
                    if label.strip().lower() == choice.strip().lower():
                        context.add_log(
                            LogType.INFO,
                            f"Auto-answered '{asked.question}' with '{label}': "
                            f"{data.get('reasoning', '')}",
                        )
                        return label
            logger.warning("Automatic answer did not match an option: %r", choice)
        except AutopilotError as e:
            if self._stop_requested:
                return None
            context.add_error("Automatic answer failed", e)

        if labels:
            context.add_log(LogType.INFO, f"Falling back to the first option: {labels[0]}")
            return labels[0]
        return None

    # Agent invocation

    def _may_retry(self) -> bool:
        return not (
            self._stop_requested
            or self._pause_requested
            or self._question_signal is not None
            or self.context.is_handoff_in_progress
        )

    async def _run_agent(
        self,
        template: str,
        variables: Optional[Dict[str, Any]] = None,
        resume_session: bool = True,
        compose: bool = True,
    ) -> AgentResult:
        """Render a prompt and run it in the current phase with retries."""
        context = self.context
        phase = context.phase
        text = self.prompts.render_template(template, self._prompt_variables(variables))
        if compose:
            text = self._compose_prompt(text)
        prompt = PromptContent(text=text, images=self._take_images())
        permission = phase.permission_mode or PermissionMode.DEFAULT
        if permission == PermissionMode.ACCEPT_EDITS:
            timeout = context.timeout_configuration.execution_timeout
        else:
            timeout = context.timeout_configuration.plan_mode_timeout

        async def attempt() -> AgentResult:
            if self._stop_requested:
                raise ProcessInterruptedError("Execution was stopped")
            return await self.executor.execute(
                prompt,
                working_dir=context.project_path,
                permission_mode=permission,
                session_id=context.session_id if resume_session else None,
                timeout=timeout,
                on_message=self._handle_message,
            )

        strategy = RetryStrategy(context.retry_configuration, sleep=self._sleep)

        def on_retry(attempt_number: int, delay: float, error: BaseException) -> None:
            context.current_retry_attempt = attempt_number
            context.add_log(
                LogType.INFO,
                strategy.get_retry_message(phase.display_name, attempt_number, delay, error),
            )

        try:
            result = await strategy.run(
                attempt,
                operation_name=phase.display_name,
                should_continue=self._may_retry,
                on_retry=on_retry,
            )
        finally:
            context.current_retry_attempt = 0

        self._record_result(result, track_session=True)
        return result

    def _prompt_variables(self, extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        context = self.context
        variables: Dict[str, Any] = {
            "feature_description": context.feature_description,
            "context": context.autonomous_config.project_context,
            "clarifications": format_clarifications(context.clarifications),
            "completed_tasks": [
                f"Task {task.ordinal}: {task.title}" for task in context.completed_tasks
            ],
        }
        task = context.current_task
        if task is not None:
            variables.update(
                task_number=task.ordinal,
                task_title=task.title,
                task_description=task.description or task.title,
                subtasks=list(task.subtasks),
            )
        variables.update(extra or {})
        return variables

    def _compose_prompt(self, text: str) -> str:
        """Prefix the continuation block and a fresh answer, each used once."""
        context = self.context
        parts = []
        if context.continuation_summary is not None:
            parts.append(context.continuation_summary.render())
            context.continuation_summary = None
        if self._pending_answer:
            parts.append(self._pending_answer + "\n\n")
            self._pending_answer = None
        parts.append(text)
        return "".join(parts)

    def _take_images(self) -> List[ImageAttachment]:
        images = list(self.context.attached_images)
        if images:
            self.context.attached_images = []
        return images

    def _handle_message(self, message: object) -> None:
        context = self.context
        if isinstance(message, SystemMessage):
            if message.session_id:
                context.session_id = message.session_id
        elif isinstance(message, AssistantMessage):
            for block in message.message.content:
                if isinstance(block, TextBlock):
                    if block.text.strip():
                        context.add_log(LogType.OUTPUT, block.text.strip())
                elif isinstance(block, ToolUseBlock):
                    context.add_log(LogType.TOOL_USE, _describe_tool_use(block))
                    if block.is_ask_user_question:
                        self._on_question(block)
            usage = message.message.usage
            if usage is not None:
                context.record_session_usage(usage.context_tokens)
                self._check_context_budget()
        elif isinstance(message, ResultMessage):
            if message.is_error:
                context.add_log(LogType.ERROR, message.result or "Agent reported an error")

    def _check_context_budget(self) -> None:
        context = self.context
        if not context.budget.should_hand_off(context):
            return
        context.is_handoff_in_progress = True
        remaining = context.budget.percent_remaining(context.budget.tokens_for(context))
        context.add_log(
            LogType.INFO,
            f"Context window low ({remaining:.0%} remaining); handing off to a new session",
        )
        self.executor.interrupt()

    def _record_result(self, result: AgentResult, track_session: bool) -> None:
        context = self.context
        context.accumulate_usage(
            result.usage.input_tokens, result.usage.output_tokens, result.total_cost_usd
        )
        if track_session and result.session_id:
            context.session_id = result.session_id
        status = "failed" if result.is_error else "finished"
        context.add_log(
            LogType.RESULT,
            f"Agent {status} in {result.duration_ms / 1000:.1f}s "
            f"(cost ${result.total_cost_usd:.4f})",
        )

    def _require_task(self) -> PlanTask:
        task = self.context.current_task
        if task is None:
            raise StateTransitionError(
                f"No current task in phase {self.context.phase.value}"
            )
        return task

    # Phase steps

    async def _generate_plan(self) -> None:
        result = await self._run_agent("generate_plan", resume_session=False)
        if result.is_error:
            raise AgentResultError(f"Plan generation failed: {result.result}")
        plan = parse_plan(OutputParser.extract_markdown(result.result))
        self.context.plan = plan
        self.context.add_log(LogType.INFO, f"Generated plan with {len(plan.tasks)} task(s)")

    async def _rewrite_plan(self) -> None:
        context = self.context
        draft = context.plan
        rewritten: Optional[Plan] = None
        try:
            result = await self._run_agent(
                "rewrite_plan", {"plan_text": draft.raw_text if draft is not None else ""}
            )
            if result.is_error:
                raise AgentResultError(result.result or "Plan refinement failed")
            rewritten = parse_plan(OutputParser.extract_markdown(result.result))
        except (AgentProcessError, AgentResultError, RetryExhaustedError) as e:
            if not self._may_retry():
                raise
            context.add_error("Plan refinement failed; keeping the generated plan", e)

        if rewritten is not None and rewritten.tasks:
            context.plan = rewritten
        elif draft is not None and draft.tasks:
            context.add_log(LogType.INFO, "Keeping the generated plan")
        else:
            raise PlanParseError("The plan does not contain any tasks")

        try:
            path = self.plan_storage.save_plan(context.plan)
        except OSError as e:
            context.add_error("Could not save the plan", e)
        else:
            context.add_log(LogType.INFO, f"Plan saved to {path}")

    async def _execute_task(self) -> None:
        task = self._require_task()
        result = await self._run_agent("execute_task")
        if result.is_error:
            raise AgentResultError(result.result or f"Task {task.ordinal} failed")
        self.context.add_log(LogType.INFO, f"Task {task.ordinal} implemented")

    async def _review_code(self) -> None:
        task = self._require_task()
        result = await self._run_agent("review_code")
        if result.is_error:
            raise AgentResultError(result.result or f"Review of task {task.ordinal} failed")

    async def _write_tests(self) -> None:
        task = self._require_task()
        result = await self._run_agent("write_tests")
        if result.is_error:
            raise AgentResultError(result.result or f"Writing tests for task {task.ordinal} failed")

    async def _fix_build_errors(self) -> None:
        await self._fix_errors(
            "fix_build",
            self.context.last_build_result,
            self.context.build_attempts,
            self.context.project_configuration.max_build_fix_attempts,
        )

    async def _fix_test_errors(self) -> None:
        await self._fix_errors(
            "fix_tests",
            self.context.last_test_result,
            self.context.test_attempts,
            self.context.project_configuration.max_test_fix_attempts,
        )

    async def _fix_errors(self, template, command_result, attempt: int, max_attempts: int) -> None:
        self._require_task()
        output = command_result.failure_output if command_result is not None else ""
        result = await self._run_agent(
            template,
            {
                "attempt": attempt,
                "max_attempts": max_attempts,
                "error_output": OutputParser.sanitize_output(output, MAX_ERROR_OUTPUT),
            },
        )
        if result.is_error:
            self.context.add_error(
                f"{self.context.phase.display_name} reported an error",
                AgentResultError(result.result),
            )

    async def _commit_phase_changes(self) -> None:
        task = self._require_task()
        message = COMMIT_MESSAGES[self.context.phase].format(title=task.title)
        if self._is_manual_mode():
            self._request_manual_step(f"git add -A && git commit -m {shlex.quote(message)}")
            return
        await self._git_commit(message)

    async def _git_commit(self, message: str) -> Optional[CommitResult]:
        context = self.context
        try:
            result = await self.git.commit_all(
                message,
                context.project_path,
                timeout=context.timeout_configuration.commit_timeout,
            )
        except GitOperationError as e:
            context.add_error(f"Commit failed: {message}", e)
            self.fallback.record_command_failure(str(e), timed_out=e.timed_out)
            return None

        self.fallback.record_command_success()
        if result.committed:
            context.add_log(LogType.INFO, f"Committed: {message}")
        else:
            context.add_log(LogType.INFO, f"Nothing to commit: {message}")
        return result

    async def _run_build(self) -> None:
        await self._run_check(build=True)

    async def _run_tests(self) -> None:
        await self._run_check(build=False)

    async def _run_check(self, build: bool) -> None:
        context = self.context
        config = context.project_configuration
        directory = context.project_path
        name = "Build" if build else "Tests"
        command = (
            self.build_runner.build_command(directory, config)
            if build
            else self.build_runner.test_command(directory, config)
        )

        self._last_check_passed = True
        if command is None:
            context.add_log(LogType.INFO, f"No {name.lower()} command configured; skipping")
            return
        if self._is_manual_mode():
            self._request_manual_step(command)
            return

        if build:
            context.build_attempts += 1
        else:
            context.test_attempts += 1
        context.add_log(LogType.INFO, f"Running {name.lower()}: {command}")

        timeout = context.timeout_configuration.command_timeout
        try:
            if build:
                result = await self.build_runner.run_build(directory, config, timeout=timeout)
            else:
                result = await self.build_runner.run_tests(directory, config, timeout=timeout)
        except BuildTestError as e:
            context.add_error(f"{name} could not run", e)
            self.fallback.record_command_failure(str(e))
            return

        if build:
            context.last_build_result = result
        else:
            context.last_test_result = result

        if result.success:
            self.fallback.record_command_success()
            context.add_log(LogType.INFO, f"{name} passed in {result.duration:.1f}s")
            return

        self._last_check_passed = False
        if result.timed_out:
            detail = f"{name} timed out after {timeout:g}s"
        else:
            detail = f"{name} failed with exit code {result.exit_code}"
        context.add_error(detail)
        self.fallback.record_command_failure(detail, timed_out=result.timed_out)

    async def _clear_context(self) -> None:
        context = self.context
        task = context.current_task
        if task is not None and task.status == TaskStatus.IN_PROGRESS:
            context.update_task_status(context.current_task_index, TaskStatus.COMPLETED)
            context.add_log(LogType.INFO, f"Task {task.ordinal} completed: {task.title}")
        context.begin_new_session()
        context.is_handoff_in_progress = False
        context.continuation_summary = None

    async def _hand_off_context(self) -> None:
        context = self.context
        task = context.current_task
        if task is not None:
            if self._is_manual_mode():
                context.add_log(LogType.INFO, "Manual mode: skipping the handoff commit")
            else:
                await self._git_commit(
                    f"WIP: Task {task.ordinal} - {task.title} (context handoff)"
                )
            if self._stop_requested or self._pause_requested:
                raise ProcessInterruptedError("Context handoff interrupted")
            summary = await self._continuation_summary(task)
        else:
            summary = None

        context.begin_new_session()
        context.continuation_summary = summary
        context.is_handoff_in_progress = False
        context.add_log(LogType.INFO, "Continuing in a new agent session")

    async def _continuation_summary(self, task: PlanTask) -> ContinuationSummary:
        context = self.context
        try:
            result = await self._run_agent("continuation_summary", compose=False)
            if result.is_error:
                raise AgentResultError(result.result or "Summary generation failed")
            return summary_from_agent_output(task, result.result)
        except AutopilotError as e:
            if self._stop_requested or self._pause_requested:
                raise
            context.add_log(LogType.INFO, f"Using a default continuation summary ({e})")

        files: List[str] = []
        try:
            files = await self.git.get_changed_files(context.project_path)
        except GitOperationError as e:
            logger.debug("Could not list changed files: %s", e)
        return default_summary(task, files)

    # Manual command mode

    def _is_manual_mode(self) -> bool:
        return self.context.effective_command_execution_mode == CommandExecutionMode.MANUAL

    def _request_manual_step(self, command: str) -> None:
        self.context.suggested_manual_command = command
        self._manual_step_pending = True


def _describe_tool_use(block: ToolUseBlock) -> str:
    if not isinstance(block.input, dict):
        return block.name
    for key in ("file_path", "command", "pattern", "path", "url"):
        value = block.input.get(key)
        if isinstance(value, str) and value:
            return f"{block.name}: {value[:200]}"
    return block.name
