"""Activity logging for workflow runs.

Every run writes a JSON-lines activity log under
``<logs_dir>/sessions/<session_id>/``. The logger can subscribe to an
ExecutionContext so phase changes, log entries and errors are recorded as
they happen.
"""

import json
import logging
import shutil
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from autopilot.core.exceptions import ActivityTrackingError
from autopilot.core.phases import ExecutionPhase
from autopilot.orchestrator.execution_context import (
    ExecutionContext,
    ExecutionError,
    LogEntry,
    LogType,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events that can be logged."""

    SESSION_START = "session_start"
    SESSION_END = "session_end"
    PHASE_CHANGE = "phase_change"
    AGENT_OUTPUT = "agent_output"
    TOOL_USE = "tool_use"
    AGENT_RESULT = "agent_result"
    ERROR = "error"
    INFO = "info"


_LOG_EVENT_TYPES: Dict[LogType, EventType] = {
    LogType.OUTPUT: EventType.AGENT_OUTPUT,
    LogType.TOOL_USE: EventType.TOOL_USE,
    LogType.RESULT: EventType.AGENT_RESULT,
    LogType.INFO: EventType.INFO,
    LogType.SEPARATOR: EventType.INFO,
}


class ActivityEvent(BaseModel):
    """Activity event model."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: EventType = Field(..., description="Type of event")
    session_id: str = Field(..., description="Session identifier")
    task_id: Optional[str] = Field(None, description="Plan task identifier")
    phase: Optional[ExecutionPhase] = Field(None, description="Workflow phase")
    message: str = Field(..., description="Event message")
    data: Dict[str, Any] = Field(default_factory=dict, description="Additional event data")


def generate_session_id() -> str:
    """Generate a unique session ID."""
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    short_uuid = str(uuid.uuid4())[:8]
    return f"autopilot-{timestamp}-{short_uuid}"


class ActivityLogger:
    """Thread-safe activity logger for workflow runs."""

    def __init__(self, logs_dir: Path, session_id: Optional[str] = None):
        """Initialize activity logger.

        Args:
            logs_dir: Directory to store log files
            session_id: Session identifier (generated if None)

        Raises:
            ActivityTrackingError: If the session directory cannot be created
        """
        self.session_id = session_id or generate_session_id()
        self.logs_dir = Path(logs_dir)
        self.session_log_dir = self.logs_dir / "sessions" / self.session_id
        try:
            self.session_log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ActivityTrackingError(
                f"Cannot create log directory {self.session_log_dir}: {e}"
            ) from e

        self.main_log_file = self.session_log_dir / "activity.jsonl"

        self._lock = threading.Lock()
        self._context: Optional[ExecutionContext] = None

    def log_event(
        self,
        event_type: EventType,
        message: str,
        task_id: Optional[str] = None,
        phase: Optional[ExecutionPhase] = None,
        **data: Any,
    ) -> ActivityEvent:
        """Log a general activity event."""
        event = ActivityEvent(
            event_type=event_type,
            session_id=self.session_id,
            task_id=task_id,
            phase=phase,
            message=message,
            data=data,
        )
        self._write_event(event)
        return event

    def log_session_start(self, working_directory: str, feature: str = "") -> None:
        self.log_event(
            EventType.SESSION_START,
            f"Session started: {self.session_id}",
            working_directory=working_directory,
            feature=feature,
        )

    def log_session_end(self, duration_ms: int, stats: Dict[str, Any]) -> None:
        self.log_event(
            EventType.SESSION_END,
            f"Session ended: {self.session_id}",
            duration_ms=duration_ms,
            **stats,
        )

    def log_error(self, error: str, task_id: Optional[str] = None, **data: Any) -> None:
        self.log_event(EventType.ERROR, error, task_id=task_id, **data)

    def log_info(self, message: str, task_id: Optional[str] = None, **data: Any) -> None:
        self.log_event(EventType.INFO, message, task_id=task_id, **data)

    # Context subscription

    def attach(self, context: ExecutionContext) -> None:
        """Record the phase changes, log entries and errors of a context."""
        self.detach()
        self._context = context
        context.add_listener(self._on_context_change)

    def detach(self) -> None:
        if self._context is not None:
            self._context.remove_listener(self._on_context_change)
            self._context = None

    def _on_context_change(self, field: str, value: Any) -> None:
        context = self._context
        if context is None:
            return
        task = context.current_task
        task_id = task.id if task is not None else None

        if field == "phase":
            phase = ExecutionPhase(value)
            self.log_event(
                EventType.PHASE_CHANGE,
                f"Phase: {phase.display_name}",
                task_id=task_id,
                phase=phase,
            )
        elif field == "logs" and isinstance(value, LogEntry):
            event_type = _LOG_EVENT_TYPES.get(value.type)
            if event_type is not None:
                self.log_event(event_type, value.message, task_id=task_id, phase=value.phase)
        elif field == "errors" and isinstance(value, ExecutionError):
            self.log_event(
                EventType.ERROR,
                value.message,
                task_id=task_id,
                phase=value.phase,
                underlying_error=value.underlying_error,
                is_recoverable=value.is_recoverable,
            )

    # Reading

    def get_task_events(self, task_id: str) -> List[ActivityEvent]:
        """Get all events recorded for a plan task."""
        return [event for event in self._read_events() if event.task_id == task_id]

    def get_recent_events(self, limit: int = 100) -> List[ActivityEvent]:
        """Get the most recent events of the session."""
        return self._read_events()[-limit:]

    def _read_events(self) -> List[ActivityEvent]:
        events = []
        if not self.main_log_file.exists():
            return events

        with open(self.main_log_file, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    events.append(ActivityEvent(**json.loads(line)))
                except (json.JSONDecodeError, ValidationError):
                    continue
        return events

    def _write_event(self, event: ActivityEvent) -> None:
        """Append one event as a JSON line."""
        with self._lock:
            try:
                with open(self.main_log_file, "a", encoding="utf-8") as f:
                    json.dump(
                        event.model_dump(mode="json"), f, default=str, separators=(",", ":")
                    )
                    f.write("\n")
            except OSError as e:
                # Logging problems must not stop the workflow
                logger.warning("Failed to write activity event: %s", e)


def cleanup_old_sessions(logs_dir: Path, retention_days: int) -> int:
    """Remove session log directories older than ``retention_days``.

    Returns:
        Number of sessions removed
    """
    sessions_dir = Path(logs_dir) / "sessions"
    if not sessions_dir.exists():
        return 0

    cutoff_time = datetime.now(timezone.utc).timestamp() - retention_days * 24 * 3600
    cleaned_count = 0
    for session_dir in sessions_dir.iterdir():
        if session_dir.is_dir() and session_dir.stat().st_mtime < cutoff_time:
            try:
                shutil.rmtree(session_dir)
            except OSError as e:
                logger.warning("Could not remove %s: %s", session_dir, e)
                continue
            cleaned_count += 1
    return cleaned_count
