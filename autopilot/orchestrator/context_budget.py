"""Context window accounting and session handoff summaries.

The agent's context window is finite. When the input tokens of the running
session approach the window size, the workflow ends the session and starts a
new one seeded with a ContinuationSummary of the work in progress.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from autopilot.config.models import AgentConfig
from autopilot.core.exceptions import OutputParseError
from autopilot.core.output_parser import OutputParser
from autopilot.core.phases import HANDOFF_PHASES
from autopilot.core.plan import PlanTask

DEFAULT_WINDOW_SIZE = 200_000
DEFAULT_LOW_WATER_MARK = 0.10


class ContinuationSummary(BaseModel):
    """Progress carried from one agent session into the next."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    task_title: str
    progress_description: str
    files_modified: List[str] = Field(default_factory=list)
    pending_work: str
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    def render(self) -> str:
        """Text block that opens the first prompt of the new session."""
        if self.files_modified:
            files = "\n".join(f"- {path}" for path in self.files_modified)
        else:
            files = "None yet"
        return (
            "[CONTINUATION FROM PREVIOUS SESSION]\n"
            f"Task: {self.task_id} - {self.task_title}\n"
            "\n"
            "Previous Progress:\n"
            f"{self.progress_description}\n"
            "\n"
            "Files Modified:\n"
            f"{files}\n"
            "\n"
            "Remaining Work:\n"
            f"{self.pending_work}\n"
            "\n"
            "Continue from where the previous session left off.\n"
            "[END CONTINUATION CONTEXT]\n"
            "\n"
        )


class ContextBudget:
    """Decides when the running agent session is close to its context limit."""

    def __init__(
        self,
        window_size: int = DEFAULT_WINDOW_SIZE,
        low_water_mark: float = DEFAULT_LOW_WATER_MARK,
        basis: str = "session",
    ):
        """Initialize the budget.

        Args:
            window_size: Context window in tokens
            low_water_mark: Remaining fraction below which the budget is low
            basis: 'session' checks the current-session estimate,
                'cumulative' checks total input tokens across sessions
        """
        self.window_size = window_size
        self.low_water_mark = low_water_mark
        self.basis = basis

    @classmethod
    def from_config(cls, config: AgentConfig) -> "ContextBudget":
        return cls(
            window_size=config.context_window_size,
            low_water_mark=config.low_context_threshold,
            basis=config.handoff_basis,
        )

    def percent_remaining(self, input_tokens: int) -> float:
        """Fraction of the window still free, never negative."""
        return max(0.0, 1.0 - input_tokens / self.window_size)

    def is_low(self, input_tokens: int) -> bool:
        return self.percent_remaining(input_tokens) < self.low_water_mark

    def tokens_for(self, context) -> int:
        """Token count the handoff decision is based on."""
        if self.basis == "cumulative":
            return context.total_input_tokens
        return context.session_input_tokens

    def should_hand_off(self, context) -> bool:
        """Check if the context should hand off to a new session now."""
        if context.phase not in HANDOFF_PHASES or context.is_handoff_in_progress:
            return False
        if context.current_task is None:
            return False
        return self.is_low(self.tokens_for(context))


def summary_from_agent_output(task: PlanTask, output: str) -> ContinuationSummary:
    """Build a summary from the agent's JSON answer.

    Raises:
        OutputParseError: If the output holds no usable summary
    """
    data = OutputParser.extract_json(output, strict=True)
    progress = data.get("progressDescription")
    pending = data.get("pendingWork")
    if not isinstance(progress, str) or not isinstance(pending, str):
        raise OutputParseError("Summary is missing progressDescription or pendingWork")

    files = data.get("filesModified") or []
    if not isinstance(files, list):
        files = []

    return ContinuationSummary(
        task_id=task.id,
        task_title=task.title,
        progress_description=progress.strip(),
        files_modified=[str(path) for path in files],
        pending_work=pending.strip(),
    )


def default_summary(
    task: PlanTask, files_modified: Optional[Iterable[str]] = None
) -> ContinuationSummary:
    """Summary used when the agent cannot produce one."""
    if task.subtasks:
        pending = "Complete the remaining acceptance criteria:\n" + "\n".join(
            f"- {item}" for item in task.subtasks
        )
    else:
        pending = f"Complete task {task.ordinal}: {task.title}"
    return ContinuationSummary(
        task_id=task.id,
        task_title=task.title,
        progress_description=(
            "Work on this task was in progress when the previous session ran out of "
            "context. Inspect the working tree and recent commits to see what is done."
        ),
        files_modified=list(files_modified or []),
        pending_work=pending,
    )
