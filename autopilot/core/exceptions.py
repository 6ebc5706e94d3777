"""Autopilot exception classes."""

from typing import Optional


class AutopilotError(Exception):
    """Base exception for all autopilot errors."""

    pass


class ConfigurationError(AutopilotError):
    """Raised when configuration or run inputs are invalid."""

    pass


class AgentNotFoundError(ConfigurationError):
    """Raised when the agent executable cannot be located."""

    def __init__(self, executable: str):
        self.executable = executable
        super().__init__(f"Agent executable not found: {executable}")


class InvalidControlSignalError(AutopilotError):
    """Raised when a control signal is not accepted in the current phase."""

    pass


class StateTransitionError(AutopilotError):
    """Raised when an illegal phase transition is attempted."""

    pass


class AgentProcessError(AutopilotError):
    """Base class for failures of the agent subprocess.

    Subclasses set ``retryable`` to tell the retry policy whether another
    attempt is worthwhile.
    """

    retryable = False


class NonZeroExitError(AgentProcessError):
    """Raised when the agent process exits with a non-zero status."""

    def __init__(self, exit_code: int, stderr: Optional[str] = None):
        self.exit_code = exit_code
        self.stderr = stderr or ""
        message = f"Agent process exited with code {exit_code}"
        if self.stderr.strip():
            message += f": {self.stderr.strip()}"
        super().__init__(message)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        # Exit code 1 is the agent's generic failure, usually transient.
        return self.exit_code == 1


class ProcessTimeoutError(AgentProcessError):
    """Raised when the agent process exceeds its wall-clock timeout."""

    retryable = True

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Agent process timed out after {timeout:g}s")


class ProcessInterruptedError(AgentProcessError):
    """Raised when the agent process was interrupted or terminated by the caller."""

    retryable = True

    def __init__(self, message: str = "Agent process was interrupted"):
        super().__init__(message)


class OutputReadError(AgentProcessError):
    """Raised when the agent output stream cannot be read."""

    pass


class NoResultMessageError(AgentProcessError):
    """Raised when the agent stream ends without a result event."""

    def __init__(self):
        super().__init__("Agent output ended without a result message")


class AgentResultError(AutopilotError):
    """Raised when the agent finishes but reports its run as failed."""

    pass


class StreamDecodeError(AutopilotError):
    """Raised when a line of agent output cannot be decoded."""

    pass


class RetryExhaustedError(AutopilotError):
    """Raised when every retry attempt of an operation has failed."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error}"
        )


class GitOperationError(AutopilotError):
    """Raised when git operations fail."""

    def __init__(
        self, message: str, exit_code: int = -1, stderr: str = "", timed_out: bool = False
    ):
        self.exit_code = exit_code
        self.stderr = stderr
        self.timed_out = timed_out
        super().__init__(message)


class BuildTestError(AutopilotError):
    """Raised when a build or test command is unavailable or cannot start."""

    pass


class PlanParseError(AutopilotError):
    """Raised when a plan document cannot be read or contains no tasks."""

    pass


class ActivityTrackingError(AutopilotError):
    """Raised when activity tracking fails."""

    pass


class OutputParseError(AutopilotError):
    """Raised when structured data cannot be extracted from agent text."""

    pass
