"""Core autopilot functionality."""

from .exceptions import (
    ActivityTrackingError,
    AgentNotFoundError,
    AgentProcessError,
    AgentResultError,
    AutopilotError,
    BuildTestError,
    ConfigurationError,
    GitOperationError,
    InvalidControlSignalError,
    NoResultMessageError,
    NonZeroExitError,
    OutputParseError,
    OutputReadError,
    PlanParseError,
    ProcessInterruptedError,
    ProcessTimeoutError,
    RetryExhaustedError,
    StateTransitionError,
    StreamDecodeError,
)
from .phases import (
    ExecutionPhase,
    PermissionMode,
    get_valid_next_phases,
    is_terminal_phase,
    is_valid_transition,
)
from .plan import Plan, PlanTask, TaskStatus

__all__ = [
    # Exceptions
    "AutopilotError",
    "ConfigurationError",
    "AgentNotFoundError",
    "InvalidControlSignalError",
    "StateTransitionError",
    "AgentProcessError",
    "NonZeroExitError",
    "ProcessTimeoutError",
    "ProcessInterruptedError",
    "OutputReadError",
    "NoResultMessageError",
    "AgentResultError",
    "StreamDecodeError",
    "RetryExhaustedError",
    "GitOperationError",
    "BuildTestError",
    "PlanParseError",
    "ActivityTrackingError",
    "OutputParseError",
    # Phases
    "ExecutionPhase",
    "PermissionMode",
    "is_valid_transition",
    "get_valid_next_phases",
    "is_terminal_phase",
    # Plan
    "Plan",
    "PlanTask",
    "TaskStatus",
]
