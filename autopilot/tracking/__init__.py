"""Activity tracking for workflow runs."""

from .activity_logger import (
    ActivityEvent,
    ActivityLogger,
    EventType,
    cleanup_old_sessions,
    generate_session_id,
)

__all__ = [
    "ActivityEvent",
    "ActivityLogger",
    "EventType",
    "cleanup_old_sessions",
    "generate_session_id",
]
