"""Configuration models for autopilot."""

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

_DURATION = re.compile(r"^(\d+(?:\.\d+)?)([hms]?)$")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "": 1.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """Convert '30m', '2h', '300s' or a number of seconds to seconds."""
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION.match(str(value).strip())
        if not match:
            raise ValueError("Duration must be seconds or a string like '30m', '2h', or '300s'")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError("Duration must be positive")
    return seconds


class AutoFailureHandling(str, Enum):
    """What to do when a task fails."""

    PAUSE_FOR_USER = "pauseForUser"
    RETRY_THEN_SKIP = "retryThenSkip"
    RETRY_THEN_STOP = "retryThenStop"


class CommandExecutionMode(str, Enum):
    """Whether build/test/git commands run unattended."""

    AUTONOMOUS = "autonomous"
    MANUAL = "manual"


class ProjectType(str, Enum):
    """Project kinds recognised by their manifest files."""

    SWIFT = "swift"
    XCODE = "xcode"
    TYPESCRIPT = "typescript"
    JAVASCRIPT = "javascript"
    RUST = "rust"
    GO = "go"
    PYTHON = "python"
    UNKNOWN = "unknown"


class AgentConfig(BaseModel):
    """Agent CLI configuration."""

    executable: str = Field(default="claude", description="Agent executable name or path")
    extra_args: List[str] = Field(
        default_factory=list, description="Extra arguments for every agent invocation"
    )
    context_window_size: int = Field(default=200_000, description="Context window in tokens")
    low_context_threshold: float = Field(
        default=0.10, description="Remaining fraction that triggers a context handoff"
    )
    handoff_basis: str = Field(
        default="session",
        description="Token count checked for handoff: 'session' or 'cumulative'",
    )

    @field_validator("context_window_size")
    @classmethod
    def validate_window(cls, v: int) -> int:
        """Validate context window size."""
        if v <= 0:
            raise ValueError("context_window_size must be positive")
        return v

    @field_validator("low_context_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Validate low context threshold."""
        if not 0.0 <= v < 1.0:
            raise ValueError("low_context_threshold must be in [0, 1)")
        return v

    @field_validator("handoff_basis")
    @classmethod
    def validate_basis(cls, v: str) -> str:
        """Validate handoff basis."""
        valid = ["session", "cumulative"]
        if v not in valid:
            raise ValueError(f"handoff_basis must be one of: {', '.join(valid)}")
        return v


class RetryConfiguration(BaseModel):
    """Retry schedule for agent invocations."""

    max_attempts: int = Field(default=3, description="Attempts including the first")
    initial_delay: float = Field(default=1.0, description="Delay before the second attempt")
    backoff_multiplier: float = Field(default=2.0, description="Delay growth per attempt")
    max_delay: float = Field(default=30.0, description="Upper bound for one delay")

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Validate attempt count."""
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    @field_validator("initial_delay", "max_delay")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        """Validate delays are not negative."""
        if v < 0:
            raise ValueError("Delays cannot be negative")
        return v

    @field_validator("backoff_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        """Validate backoff multiplier."""
        if v < 1.0:
            raise ValueError("backoff_multiplier must be at least 1.0")
        return v

    def delay(self, attempt: int) -> float:
        """Delay in seconds after the given (1-based) failed attempt."""
        exponent = max(attempt, 1) - 1
        try:
            raw = self.initial_delay * self.backoff_multiplier**exponent
        except OverflowError:
            return self.max_delay
        return min(raw, self.max_delay)


class AutonomousConfiguration(BaseModel):
    """How much the workflow decides on its own."""

    auto_answer_enabled: bool = Field(
        default=False, description="Answer agent questions without asking the user"
    )
    auto_failure_handling: AutoFailureHandling = Field(
        default=AutoFailureHandling.PAUSE_FOR_USER, description="Task failure strategy"
    )
    max_task_retries: int = Field(default=3, description="Task retries before skip/stop")
    run_build_after_commit: bool = Field(default=False, description="Build after each task")
    run_tests_after_commit: bool = Field(default=False, description="Test after each task")
    consecutive_failures_before_fallback: int = Field(
        default=3, description="Command failures that switch to manual mode"
    )
    fallback_on_command_failure: bool = Field(
        default=True, description="Switch to manual mode on repeated command failures"
    )
    command_execution_mode: CommandExecutionMode = Field(
        default=CommandExecutionMode.AUTONOMOUS, description="Default command mode"
    )
    project_context: str = Field(default="", description="Context added to every prompt")
    skip_tests_for_ui_tasks: bool = Field(
        default=False, description="Skip test writing for tasks that only touch UI"
    )

    @field_validator("max_task_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        """Validate task retries."""
        if v < 0:
            raise ValueError("max_task_retries cannot be negative")
        return v

    @field_validator("consecutive_failures_before_fallback")
    @classmethod
    def validate_fallback_threshold(cls, v: int) -> int:
        """Validate fallback threshold."""
        if v < 1:
            raise ValueError("consecutive_failures_before_fallback must be at least 1")
        return v


class TimeoutConfiguration(BaseModel):
    """Wall-clock ceilings in seconds per phase class."""

    plan_mode_timeout: float = Field(default=300.0, description="Planning and review phases")
    execution_timeout: float = Field(default=900.0, description="Implementation phases")
    commit_timeout: float = Field(default=60.0, description="Git commits")
    command_timeout: float = Field(default=600.0, description="Build and test commands")

    @field_validator(
        "plan_mode_timeout", "execution_timeout", "commit_timeout", "command_timeout", mode="before"
    )
    @classmethod
    def validate_timeout(cls, v: Any) -> float:
        """Accept seconds or duration strings."""
        return parse_duration(v)


class ProjectConfiguration(BaseModel):
    """Build and test settings of the target project."""

    project_type: ProjectType = Field(
        default=ProjectType.UNKNOWN, description="Project type, detected when unknown"
    )
    build_command: Optional[str] = Field(default=None, description="Override build command")
    test_command: Optional[str] = Field(default=None, description="Override test command")
    max_build_fix_attempts: int = Field(default=3, description="Build fix attempts")
    max_test_fix_attempts: int = Field(default=3, description="Test fix attempts")

    @field_validator("max_build_fix_attempts", "max_test_fix_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Validate fix attempt limits."""
        if v < 0:
            raise ValueError("Fix attempts cannot be negative")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    output_dir: str = Field(default=".autopilot/logs", description="Log output directory")
    activity_log: bool = Field(default=True, description="Write activity JSONL files")
    retention_days: int = Field(default=30, description="Log retention in days")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if v.upper() not in valid_levels:
            raise ValueError(f"level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        """Validate retention days."""
        if v < 1:
            raise ValueError("retention_days must be at least 1")
        if v > 365:
            raise ValueError("retention_days cannot exceed 365")
        return v


class AutopilotConfig(BaseModel):
    """Main autopilot configuration."""

    agent: AgentConfig = Field(default_factory=AgentConfig, description="Agent configuration")
    retry: RetryConfiguration = Field(
        default_factory=RetryConfiguration, description="Retry configuration"
    )
    autonomous: AutonomousConfiguration = Field(
        default_factory=AutonomousConfiguration, description="Autonomy configuration"
    )
    timeouts: TimeoutConfiguration = Field(
        default_factory=TimeoutConfiguration, description="Timeout configuration"
    )
    project: ProjectConfiguration = Field(
        default_factory=ProjectConfiguration, description="Project configuration"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    def get_log_dir(self) -> Path:
        """Get the log directory as a Path object."""
        return Path(self.logging.output_dir).expanduser().resolve()


def resolve_env_vars(obj: Any) -> Any:
    """Recursively resolve ${VAR} and ${VAR:default} in configuration values."""
    if isinstance(obj, dict):
        return {key: resolve_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [resolve_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return _resolve_env_var_string(obj)
    else:
        return obj


def _resolve_env_var_string(value: str) -> str:
    """Resolve environment variables in a string."""
    # Pattern for ${VAR_NAME} or ${VAR_NAME:default_value}
    pattern = r"\$\{([^}:]+)(?::([^}]*))?\}"

    def replace_var(match):
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.getenv(var_name, default_value)

    return re.sub(pattern, replace_var, value)
