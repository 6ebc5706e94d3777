"""Fallback and autonomy policy.

Two independent concerns live here:

* Command failures (build, test, git) count towards a consecutive-failure
  threshold. Reaching it switches the run to manual command execution until
  the user explicitly resets fallback mode. A success resets the counter but
  not the mode.
* Task failures (the agent could not complete a task) are handled according
  to ``auto_failure_handling``: ask the user, or retry up to
  ``max_task_retries`` and then skip or stop.
"""

from enum import Enum

from autopilot.config.models import AutoFailureHandling

from .execution_context import ExecutionContext, FallbackReason, LogType


class TaskFailureDecision(str, Enum):
    """What to do about a failed task."""

    PAUSE_FOR_USER = "pauseForUser"
    RETRY = "retry"
    SKIP = "skip"
    STOP = "stop"


class FallbackPolicy:
    """Applies the fallback rules to an ExecutionContext."""

    def __init__(self, context: ExecutionContext):
        self.context = context

    @property
    def config(self):
        return self.context.autonomous_config

    # Command failures

    def record_command_failure(self, detail: str, timed_out: bool = False) -> bool:
        """Count a failed command.

        Args:
            detail: Short description of the failure
            timed_out: Whether the command was killed by its timeout

        Returns:
            True if this failure switched the run to fallback mode
        """
        context = self.context
        context.consecutive_command_failures += 1
        failures = context.consecutive_command_failures
        threshold = self.config.consecutive_failures_before_fallback

        if context.is_in_fallback_mode or not self.config.fallback_on_command_failure:
            return False
        if failures < threshold:
            return False

        if threshold > 1:
            reason = FallbackReason.consecutive_failures(failures)
        elif timed_out:
            reason = FallbackReason.timeout()
        else:
            reason = FallbackReason.command_failure(detail)
        self.trigger_fallback(reason)
        return True

    def record_command_success(self) -> None:
        """Reset the consecutive failure counter; fallback mode is kept."""
        self.context.consecutive_command_failures = 0

    def trigger_fallback(self, reason: FallbackReason) -> None:
        self.context.is_in_fallback_mode = True
        self.context.fallback_reason = reason
        self.context.add_log(LogType.INFO, f"Switching to manual mode: {reason.display_message}")

    def reset(self) -> None:
        """Leave fallback mode and forget any manual override."""
        self.context.is_in_fallback_mode = False
        self.context.consecutive_command_failures = 0
        self.context.fallback_reason = None
        self.context.autonomous_mode_override = None

    def set_manual_mode(self, manual: bool) -> None:
        """User toggle between manual and autonomous command execution."""
        if manual:
            self.context.autonomous_mode_override = False
            self.trigger_fallback(FallbackReason.user_toggled())
        else:
            self.reset()
            self.context.add_log(LogType.INFO, "Switched back to autonomous mode")

    # Task failures

    def decide_task_failure(self) -> TaskFailureDecision:
        """Decide how to handle the current task's failure.

        Counts the failure in ``task_failure_count`` unless the user decides.
        """
        handling = self.config.auto_failure_handling
        if handling == AutoFailureHandling.PAUSE_FOR_USER:
            return TaskFailureDecision.PAUSE_FOR_USER

        self.context.task_failure_count += 1
        if self.context.task_failure_count <= self.config.max_task_retries:
            return TaskFailureDecision.RETRY

        if handling == AutoFailureHandling.RETRY_THEN_SKIP:
            return TaskFailureDecision.SKIP
        return TaskFailureDecision.STOP

    def task_retry_delay(self) -> float:
        """Delay before retrying the current task."""
        return self.context.retry_configuration.delay(self.context.task_failure_count)
