"""Plan and task models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    """Lifecycle of one planned task."""

    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanTask(BaseModel):
    """One discrete unit of planned work."""

    id: str = Field(description="Task identifier, defaults to the ordinal")
    ordinal: int = Field(ge=0, description="Task number as written in the plan")
    title: str = Field(description="Short task title")
    description: str = Field(default="", description="Task description")
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    subtasks: List[str] = Field(default_factory=list, description="Checklist items")

    @property
    def is_done(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)


class Plan(BaseModel):
    """A parsed plan document and its tasks."""

    raw_text: str = Field(description="Plan document exactly as produced")
    tasks: List[PlanTask] = Field(default_factory=list)

    @property
    def pending_tasks(self) -> List[PlanTask]:
        return [task for task in self.tasks if task.status == TaskStatus.PENDING]

    def first_pending_index(self) -> Optional[int]:
        """Index of the first pending task, or None when nothing is left."""
        for index, task in enumerate(self.tasks):
            if task.status == TaskStatus.PENDING:
                return index
        return None

    def next_pending_index(self, after: int) -> Optional[int]:
        """Index of the first pending task strictly after ``after``."""
        for index in range(after + 1, len(self.tasks)):
            if self.tasks[index].status == TaskStatus.PENDING:
                return index
        return None
