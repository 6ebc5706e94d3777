"""Parsing and storage of plan documents.

A plan document is markdown with one block per task:

    ## Task 1: Add login
    **Description:** OAuth flow
    - [ ] wire button
    - [x] add route

Only those three line shapes carry meaning; everything else is kept in the
raw text but ignored by the parser. Saving writes the raw text back unchanged
so that a saved plan re-parses to the same task list.
"""

import re
from pathlib import Path
from typing import List, Optional

from autopilot.core.exceptions import PlanParseError
from autopilot.core.plan import Plan, PlanTask

PLAN_FILENAME = "plan.md"

_TASK_HEADER = re.compile(r"## Task (\d+): (.+)")
_DESCRIPTION = re.compile(r"\*\*Description:\*\*\s*(.+)")
_SUBTASK = re.compile(r"- \[[ xX]?\] (.+)")


def parse_plan(text: str) -> Plan:
    """Parse plan text into a Plan.

    Args:
        text: Plan document

    Returns:
        Plan holding the unmodified text and the tasks found in it
    """
    tasks: List[PlanTask] = []
    current: Optional[PlanTask] = None

    for raw_line in text.splitlines():
        line = raw_line.strip()

        header = _TASK_HEADER.fullmatch(line)
        if header:
            if current is not None:
                tasks.append(current)
            ordinal = int(header.group(1))
            current = PlanTask(
                id=str(ordinal),
                ordinal=ordinal,
                title=header.group(2).strip(),
            )
            continue

        if current is None:
            continue

        description = _DESCRIPTION.fullmatch(line)
        if description:
            current.description = description.group(1).strip()
            continue

        subtask = _SUBTASK.fullmatch(line)
        if subtask:
            current.subtasks.append(subtask.group(1).strip())

    if current is not None:
        tasks.append(current)

    return Plan(raw_text=text, tasks=tasks)


class PlanStorage:
    """Manages storage and retrieval of the plan document of a project."""

    def __init__(self, project_dir: Optional[Path] = None, filename: str = PLAN_FILENAME):
        """Initialize plan storage.

        Args:
            project_dir: Directory holding the plan file (defaults to cwd)
            filename: Plan file name
        """
        if project_dir is None:
            project_dir = Path.cwd()

        self.project_dir = Path(project_dir)
        self.filename = filename

    @property
    def plan_path(self) -> Path:
        return self.project_dir / self.filename

    def save_plan(self, plan: Plan, path: Optional[Path] = None) -> Path:
        """Save a plan's raw text.

        Args:
            plan: Plan to save
            path: Destination (defaults to the project plan file)

        Returns:
            Path to saved plan file
        """
        plan_file = Path(path) if path is not None else self.plan_path
        plan_file.parent.mkdir(parents=True, exist_ok=True)
        plan_file.write_text(plan.raw_text, encoding="utf-8")
        return plan_file

    def load_plan(self, path: Optional[Path] = None) -> Optional[Plan]:
        """Load and parse a plan file.

        Args:
            path: Plan file (defaults to the project plan file)

        Returns:
            Parsed plan, or None if the file does not exist

        Raises:
            PlanParseError: If the file cannot be read
        """
        plan_file = Path(path) if path is not None else self.plan_path
        if not plan_file.exists():
            return None

        try:
            text = plan_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PlanParseError(f"Failed to read plan {plan_file}: {e}") from e

        return parse_plan(text)

    def plan_exists(self) -> bool:
        """Check if the project plan file exists."""
        return self.plan_path.exists()

    def delete_plan(self) -> bool:
        """Delete the project plan file.

        Returns:
            True if deleted, False if not found
        """
        if not self.plan_path.exists():
            return False
        self.plan_path.unlink()
        return True
