"""Autopilot configuration."""

from .loader import create_default_config, load_config, save_config
from .models import (
    AgentConfig,
    AutoFailureHandling,
    AutonomousConfiguration,
    AutopilotConfig,
    CommandExecutionMode,
    LoggingConfig,
    ProjectConfiguration,
    ProjectType,
    RetryConfiguration,
    TimeoutConfiguration,
)

__all__ = [
    "AgentConfig",
    "AutoFailureHandling",
    "AutonomousConfiguration",
    "AutopilotConfig",
    "CommandExecutionMode",
    "LoggingConfig",
    "ProjectConfiguration",
    "ProjectType",
    "RetryConfiguration",
    "TimeoutConfiguration",
    "create_default_config",
    "load_config",
    "save_config",
]
