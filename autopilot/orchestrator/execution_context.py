"""Observable state of one workflow instance.

The ExecutionContext is owned by its ExecutionStateMachine, which is the only
writer. Observers subscribe with ``add_listener`` and are called with the
name of the changed field and its new value (for the log and error lists,
the appended entry). Every change also bumps ``version`` so pollers can
cheaply detect updates.
"""

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from autopilot.config.models import AutopilotConfig, CommandExecutionMode
from autopilot.core.build_runner import CommandResult
from autopilot.core.phases import ExecutionPhase
from autopilot.core.plan import Plan, PlanTask, TaskStatus
from autopilot.core.prompt_content import ImageAttachment
from autopilot.core.stream_messages import UserQuestion

from .context_budget import ContextBudget, ContinuationSummary

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 10_000
MAX_ERROR_ENTRIES = 1_000

NEW_FEATURE_SEPARATOR = "─── New Feature Session ───"

ContextListener = Callable[[str, Any], None]


class LogType(str, Enum):
    """Kinds of log entries."""

    OUTPUT = "output"
    TOOL_USE = "toolUse"
    RESULT = "result"
    ERROR = "error"
    INFO = "info"
    SEPARATOR = "separator"


class LogEntry(BaseModel):
    """One timestamped line of the run log."""

    timestamp: datetime = Field(default_factory=datetime.utcnow)
    phase: ExecutionPhase
    type: LogType
    message: str


class ExecutionError(BaseModel):
    """A failure recorded during the run."""

    timestamp: datetime = Field(default_factory=datetime.utcnow)
    phase: ExecutionPhase
    message: str
    underlying_error: Optional[str] = None
    is_recoverable: bool = True


class PendingQuestion(BaseModel):
    """A question from the agent that blocks the loop until answered."""

    tool_use_id: str
    questions: List[UserQuestion] = Field(min_length=1)
    raised_in_phase: ExecutionPhase
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @property
    def question(self) -> UserQuestion:
        return self.questions[0]


class PendingTaskFailure(BaseModel):
    """A failed task waiting for the user to choose retry, skip or stop."""

    task_id: str
    task_title: str
    error: str
    failed_phase: ExecutionPhase
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class TaskFailureResponse(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    STOP = "stop"


class FallbackReasonKind(str, Enum):
    TIMEOUT = "timeout"
    COMMAND_FAILURE = "commandFailure"
    CONSECUTIVE_FAILURES = "consecutiveFailures"
    USER_TOGGLED = "userToggled"


class FallbackReason(BaseModel):
    """Why the workflow switched to manual command execution."""

    model_config = ConfigDict(frozen=True)

    kind: FallbackReasonKind
    detail: Optional[str] = None
    count: Optional[int] = None

    @classmethod
    def timeout(cls) -> "FallbackReason":
        return cls(kind=FallbackReasonKind.TIMEOUT)

    @classmethod
    def command_failure(cls, detail: str) -> "FallbackReason":
        return cls(kind=FallbackReasonKind.COMMAND_FAILURE, detail=detail)

    @classmethod
    def consecutive_failures(cls, count: int) -> "FallbackReason":
        return cls(kind=FallbackReasonKind.CONSECUTIVE_FAILURES, count=count)

    @classmethod
    def user_toggled(cls) -> "FallbackReason":
        return cls(kind=FallbackReasonKind.USER_TOGGLED)

    @property
    def display_message(self) -> str:
        if self.kind == FallbackReasonKind.TIMEOUT:
            return "Command timed out"
        if self.kind == FallbackReasonKind.COMMAND_FAILURE:
            return f"Command failed: {self.detail}"
        if self.kind == FallbackReasonKind.CONSECUTIVE_FAILURES:
            return f"{self.count} consecutive failures"
        return "User switched to manual"


class QuestionAnswer(BaseModel):
    """A clarification collected from the user."""

    question: str
    answer: str


class ExecutionContext:
    """Mutable, observable record of one workflow instance."""

    def __init__(self, config: Optional[AutopilotConfig] = None):
        """Initialize an idle context.

        Args:
            config: Configuration the run starts from (defaults if None)
        """
        self._listeners: List[ContextListener] = []
        self._version = 0
        self._ready = False

        self.config = config or AutopilotConfig()
        self.retry_configuration = self.config.retry
        self.autonomous_config = self.config.autonomous
        self.timeout_configuration = self.config.timeouts
        self.project_configuration = self.config.project
        self.budget = ContextBudget.from_config(self.config.agent)

        self.logs: List[LogEntry] = []
        self.errors: List[ExecutionError] = []
        self.project_path: Optional[Path] = None
        self._reset_run_state()
        self._reset_fallback_fields()

        self._ready = True

    def __setattr__(self, name: str, value: Any) -> None:
        object.__setattr__(self, name, value)
        if not name.startswith("_") and getattr(self, "_ready", False):
            self._notify(name, value)

    # Observation

    @property
    def version(self) -> int:
        """Incremented on every change."""
        return self._version

    def add_listener(self, listener: ContextListener) -> None:
        """Register a change listener called as listener(field, value)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ContextListener) -> None:
        """Unregister a change listener."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, field: str, value: Any) -> None:
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(field, value)
            except Exception:
                # Observers must never break the workflow
                logger.exception("Context listener failed for %s", field)

    # Lifecycle

    def _reset_run_state(self) -> None:
        self.feature_description = ""
        self.attached_images: List[ImageAttachment] = []
        self.clarifications: List[QuestionAnswer] = []
        self.phase = ExecutionPhase.IDLE
        self.phase_before_pause: Optional[ExecutionPhase] = None
        self.plan: Optional[Plan] = None
        self.current_task_index = 0
        self.session_id: Optional[str] = None
        self.start_time: Optional[datetime] = None
        self.pending_question: Optional[PendingQuestion] = None
        self.pending_task_failure: Optional[PendingTaskFailure] = None
        self.total_cost = 0.0
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.session_input_tokens = 0
        self.continuation_summary: Optional[ContinuationSummary] = None
        self.is_handoff_in_progress = False
        self.current_retry_attempt = 0
        self.task_failure_count = 0
        self.build_attempts = 0
        self.test_attempts = 0
        self.last_build_result: Optional[CommandResult] = None
        self.last_test_result: Optional[CommandResult] = None
        self.suggested_manual_command: Optional[str] = None

    def _reset_fallback_fields(self) -> None:
        self.is_in_fallback_mode = False
        self.consecutive_command_failures = 0
        self.fallback_reason: Optional[FallbackReason] = None
        self.autonomous_mode_override: Optional[bool] = None

    def reset(self) -> None:
        """Return to the idle baseline, dropping history."""
        self.logs = []
        self.errors = []
        self._reset_run_state()
        self._reset_fallback_fields()

    def reset_for_new_feature(self) -> None:
        """Clear per-run fields but keep the log, errors and fallback state."""
        self._reset_run_state()
        self.add_log(LogType.SEPARATOR, NEW_FEATURE_SEPARATOR)

    # Logging

    def add_log(self, log_type: LogType, message: str) -> LogEntry:
        """Append a log entry, dropping the oldest beyond the limit."""
        entry = LogEntry(phase=self.phase, type=LogType(log_type), message=message)
        self.logs.append(entry)
        if len(self.logs) > MAX_LOG_ENTRIES:
            del self.logs[: len(self.logs) - MAX_LOG_ENTRIES]
        self._notify("logs", entry)
        return entry

    def add_error(
        self,
        message: str,
        underlying_error: Optional[BaseException] = None,
        is_recoverable: bool = True,
    ) -> ExecutionError:
        """Record an error and log it."""
        error = ExecutionError(
            phase=self.phase,
            message=message,
            underlying_error=str(underlying_error) if underlying_error is not None else None,
            is_recoverable=is_recoverable,
        )
        self.errors.append(error)
        if len(self.errors) > MAX_ERROR_ENTRIES:
            del self.errors[: len(self.errors) - MAX_ERROR_ENTRIES]
        self._notify("errors", error)

        detail = f": {underlying_error}" if underlying_error is not None else ""
        self.add_log(LogType.ERROR, f"{message}{detail}")
        return error

    # Tasks

    @property
    def current_task(self) -> Optional[PlanTask]:
        if self.plan is None or not 0 <= self.current_task_index < len(self.plan.tasks):
            return None
        return self.plan.tasks[self.current_task_index]

    @property
    def completed_tasks(self) -> List[PlanTask]:
        if self.plan is None:
            return []
        return [task for task in self.plan.tasks if task.status == TaskStatus.COMPLETED]

    def update_task_status(self, index: int, status: TaskStatus) -> None:
        """Set the status of the task at ``index``."""
        if self.plan is None or not 0 <= index < len(self.plan.tasks):
            return
        self.plan.tasks[index].status = TaskStatus(status)
        self._notify("plan", self.plan)

    def advance_to_next_task(self) -> bool:
        """Move to the next pending task.

        Returns:
            True if there is one, False when the plan is finished
        """
        if self.plan is None:
            return False
        next_index = self.plan.next_pending_index(self.current_task_index)
        if next_index is None:
            self.current_task_index = len(self.plan.tasks)
            return False
        self.current_task_index = next_index
        self.task_failure_count = 0
        self.build_attempts = 0
        self.test_attempts = 0
        return True

    @property
    def progress(self) -> float:
        """Fraction of the plan done, counting the executing task as half."""
        if self.plan is None or not self.plan.tasks:
            return 0.0
        done = sum(1 for task in self.plan.tasks if task.is_done)
        in_flight = 0.5 if self.phase == ExecutionPhase.EXECUTING_TASK else 0.0
        return min((done + in_flight) / len(self.plan.tasks), 1.0)

    # Usage

    def accumulate_usage(self, input_tokens: int, output_tokens: int, cost: float = 0.0) -> None:
        """Add one agent call's usage to the cumulative totals."""
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens
        self.total_cost += cost

    def record_session_usage(self, context_tokens: int) -> None:
        """Update the current-session estimate from the latest assistant turn."""
        self.session_input_tokens = context_tokens

    def begin_new_session(self) -> None:
        """Forget the agent session so the next call starts a fresh one."""
        self.session_id = None
        self.session_input_tokens = 0

    @property
    def context_percent_remaining(self) -> float:
        """Window fraction left according to the cumulative input tokens."""
        return self.budget.percent_remaining(self.total_input_tokens)

    @property
    def session_context_percent_remaining(self) -> float:
        """Window fraction left in the current agent session."""
        return self.budget.percent_remaining(self.session_input_tokens)

    @property
    def is_context_low(self) -> bool:
        return self.budget.is_low(self.budget.tokens_for(self))

    # Control state

    @property
    def is_blocked(self) -> bool:
        """True while waiting on the user for an answer or a failure decision."""
        return self.pending_question is not None or self.pending_task_failure is not None

    @property
    def is_running(self) -> bool:
        return self.phase not in (
            ExecutionPhase.IDLE,
            ExecutionPhase.PAUSED,
            ExecutionPhase.COMPLETED,
            ExecutionPhase.FAILED,
        )

    @property
    def can_pause(self) -> bool:
        return (
            self.is_running
            and self.phase != ExecutionPhase.WAITING_FOR_USER
            and not self.is_blocked
        )

    @property
    def can_resume(self) -> bool:
        return self.phase == ExecutionPhase.PAUSED

    @property
    def can_stop(self) -> bool:
        return self.phase not in (
            ExecutionPhase.IDLE,
            ExecutionPhase.COMPLETED,
            ExecutionPhase.FAILED,
        )

    @property
    def effective_command_execution_mode(self) -> CommandExecutionMode:
        """Override first, then fallback mode, then configuration."""
        if self.autonomous_mode_override is not None:
            return (
                CommandExecutionMode.AUTONOMOUS
                if self.autonomous_mode_override
                else CommandExecutionMode.MANUAL
            )
        if self.is_in_fallback_mode:
            return CommandExecutionMode.MANUAL
        return self.autonomous_config.command_execution_mode
