"""Execution phase definitions and transitions."""

from enum import Enum
from typing import Dict, List, Optional


class PermissionMode(str, Enum):
    """Agent permission level passed on the command line."""

    PLAN = "plan"
    ACCEPT_EDITS = "acceptEdits"
    DEFAULT = "default"


class ExecutionPhase(str, Enum):
    """Workflow phases of a single feature run."""

    IDLE = "idle"
    GENERATING_INITIAL_PLAN = "generatingInitialPlan"
    REWRITING_PLAN = "rewritingPlan"
    EXECUTING_TASK = "executingTask"
    COMMITTING_IMPLEMENTATION = "committingImplementation"
    REVIEWING_CODE = "reviewingCode"
    COMMITTING_REVIEW = "committingReview"
    WRITING_TESTS = "writingTests"
    COMMITTING_TESTS = "committingTests"
    RUNNING_BUILD = "runningBuild"
    FIXING_BUILD_ERRORS = "fixingBuildErrors"
    RUNNING_TESTS = "runningTests"
    FIXING_TEST_ERRORS = "fixingTestErrors"
    CLEARING_CONTEXT = "clearingContext"
    HANDLING_CONTEXT_EXHAUSTION = "handlingContextExhaustion"
    WAITING_FOR_USER = "waitingForUser"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def permission_mode(self) -> Optional[PermissionMode]:
        """Permission level the agent runs with in this phase, if any."""
        return PHASE_PERMISSIONS.get(self)

    @property
    def progress_weight(self) -> float:
        """Rough position of the phase within one task, for display only."""
        return PROGRESS_WEIGHTS[self]

    @property
    def is_terminal(self) -> bool:
        return is_terminal_phase(self)

    @property
    def is_active(self) -> bool:
        return self not in INACTIVE_PHASES

    @property
    def invokes_agent(self) -> bool:
        return self in AGENT_PHASES


_DISPLAY_NAMES: Dict[ExecutionPhase, str] = {
    ExecutionPhase.IDLE: "Ready",
    ExecutionPhase.GENERATING_INITIAL_PLAN: "Generating Plan",
    ExecutionPhase.REWRITING_PLAN: "Refining Plan",
    ExecutionPhase.EXECUTING_TASK: "Executing Task",
    ExecutionPhase.COMMITTING_IMPLEMENTATION: "Committing Implementation",
    ExecutionPhase.REVIEWING_CODE: "Reviewing Code",
    ExecutionPhase.COMMITTING_REVIEW: "Committing Review",
    ExecutionPhase.WRITING_TESTS: "Writing Tests",
    ExecutionPhase.COMMITTING_TESTS: "Committing Tests",
    ExecutionPhase.RUNNING_BUILD: "Running Build",
    ExecutionPhase.FIXING_BUILD_ERRORS: "Fixing Build Errors",
    ExecutionPhase.RUNNING_TESTS: "Running Tests",
    ExecutionPhase.FIXING_TEST_ERRORS: "Fixing Test Failures",
    ExecutionPhase.CLEARING_CONTEXT: "Clearing Context",
    ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION: "Handing Off Context",
    ExecutionPhase.WAITING_FOR_USER: "Waiting for Input",
    ExecutionPhase.PAUSED: "Paused",
    ExecutionPhase.COMPLETED: "Completed",
    ExecutionPhase.FAILED: "Failed",
}

PHASE_PERMISSIONS: Dict[ExecutionPhase, PermissionMode] = {
    ExecutionPhase.GENERATING_INITIAL_PLAN: PermissionMode.PLAN,
    ExecutionPhase.REWRITING_PLAN: PermissionMode.PLAN,
    ExecutionPhase.REVIEWING_CODE: PermissionMode.PLAN,
    ExecutionPhase.WRITING_TESTS: PermissionMode.PLAN,
    ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION: PermissionMode.PLAN,
    ExecutionPhase.EXECUTING_TASK: PermissionMode.ACCEPT_EDITS,
    ExecutionPhase.FIXING_BUILD_ERRORS: PermissionMode.ACCEPT_EDITS,
    ExecutionPhase.FIXING_TEST_ERRORS: PermissionMode.ACCEPT_EDITS,
    ExecutionPhase.COMMITTING_IMPLEMENTATION: PermissionMode.ACCEPT_EDITS,
    ExecutionPhase.COMMITTING_REVIEW: PermissionMode.ACCEPT_EDITS,
    ExecutionPhase.COMMITTING_TESTS: PermissionMode.ACCEPT_EDITS,
}

PROGRESS_WEIGHTS: Dict[ExecutionPhase, float] = {
    ExecutionPhase.IDLE: 0.0,
    ExecutionPhase.GENERATING_INITIAL_PLAN: 0.1,
    ExecutionPhase.REWRITING_PLAN: 0.2,
    ExecutionPhase.EXECUTING_TASK: 0.3,
    ExecutionPhase.WAITING_FOR_USER: 0.3,
    ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION: 0.3,
    ExecutionPhase.COMMITTING_IMPLEMENTATION: 0.5,
    ExecutionPhase.RUNNING_BUILD: 0.55,
    ExecutionPhase.FIXING_BUILD_ERRORS: 0.55,
    ExecutionPhase.REVIEWING_CODE: 0.6,
    ExecutionPhase.COMMITTING_REVIEW: 0.7,
    ExecutionPhase.WRITING_TESTS: 0.8,
    ExecutionPhase.COMMITTING_TESTS: 0.85,
    ExecutionPhase.RUNNING_TESTS: 0.9,
    ExecutionPhase.FIXING_TEST_ERRORS: 0.9,
    ExecutionPhase.CLEARING_CONTEXT: 0.95,
    ExecutionPhase.PAUSED: 0.0,
    ExecutionPhase.COMPLETED: 1.0,
    ExecutionPhase.FAILED: 0.0,
}

INACTIVE_PHASES = frozenset(
    {
        ExecutionPhase.IDLE,
        ExecutionPhase.PAUSED,
        ExecutionPhase.WAITING_FOR_USER,
        ExecutionPhase.COMPLETED,
        ExecutionPhase.FAILED,
    }
)

# Phases whose step runs the agent subprocess.
AGENT_PHASES = frozenset(
    {
        ExecutionPhase.GENERATING_INITIAL_PLAN,
        ExecutionPhase.REWRITING_PLAN,
        ExecutionPhase.EXECUTING_TASK,
        ExecutionPhase.REVIEWING_CODE,
        ExecutionPhase.WRITING_TESTS,
        ExecutionPhase.FIXING_BUILD_ERRORS,
        ExecutionPhase.FIXING_TEST_ERRORS,
        ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION,
    }
)

# Agent phases that may stop to ask the user a question.
QUESTION_PHASES = AGENT_PHASES - {ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION}

# Agent phases bound to a current task; only these hand off context.
HANDOFF_PHASES = frozenset(
    {
        ExecutionPhase.EXECUTING_TASK,
        ExecutionPhase.REVIEWING_CODE,
        ExecutionPhase.WRITING_TESTS,
        ExecutionPhase.FIXING_BUILD_ERRORS,
        ExecutionPhase.FIXING_TEST_ERRORS,
    }
)

# Phases whose failure is governed by the task failure policy.
TASK_PHASES = frozenset(
    {
        ExecutionPhase.EXECUTING_TASK,
        ExecutionPhase.REVIEWING_CODE,
        ExecutionPhase.WRITING_TESTS,
    }
)

COMMIT_PHASES = frozenset(
    {
        ExecutionPhase.COMMITTING_IMPLEMENTATION,
        ExecutionPhase.COMMITTING_REVIEW,
        ExecutionPhase.COMMITTING_TESTS,
    }
)

# Valid phase transitions, excluding the edges every phase shares (see below)
_WORKFLOW_TRANSITIONS: Dict[ExecutionPhase, List[ExecutionPhase]] = {
    ExecutionPhase.IDLE: [
        ExecutionPhase.GENERATING_INITIAL_PLAN,
        ExecutionPhase.EXECUTING_TASK,  # Existing plan
        ExecutionPhase.COMPLETED,  # Existing plan with nothing pending
    ],
    ExecutionPhase.GENERATING_INITIAL_PLAN: [ExecutionPhase.REWRITING_PLAN],
    ExecutionPhase.REWRITING_PLAN: [ExecutionPhase.EXECUTING_TASK],
    ExecutionPhase.EXECUTING_TASK: [
        ExecutionPhase.COMMITTING_IMPLEMENTATION,
        ExecutionPhase.EXECUTING_TASK,  # Retry
        ExecutionPhase.CLEARING_CONTEXT,  # Skip
    ],
    ExecutionPhase.COMMITTING_IMPLEMENTATION: [
        ExecutionPhase.RUNNING_BUILD,
        ExecutionPhase.REVIEWING_CODE,
    ],
    ExecutionPhase.RUNNING_BUILD: [
        ExecutionPhase.REVIEWING_CODE,
        ExecutionPhase.FIXING_BUILD_ERRORS,
    ],
    ExecutionPhase.FIXING_BUILD_ERRORS: [ExecutionPhase.RUNNING_BUILD],
    ExecutionPhase.REVIEWING_CODE: [
        ExecutionPhase.COMMITTING_REVIEW,
        ExecutionPhase.REVIEWING_CODE,
        ExecutionPhase.CLEARING_CONTEXT,
    ],
    ExecutionPhase.COMMITTING_REVIEW: [
        ExecutionPhase.WRITING_TESTS,
        ExecutionPhase.CLEARING_CONTEXT,  # Tests skipped for UI-only tasks
    ],
    ExecutionPhase.WRITING_TESTS: [
        ExecutionPhase.COMMITTING_TESTS,
        ExecutionPhase.WRITING_TESTS,
        ExecutionPhase.CLEARING_CONTEXT,
    ],
    ExecutionPhase.COMMITTING_TESTS: [
        ExecutionPhase.RUNNING_TESTS,
        ExecutionPhase.CLEARING_CONTEXT,
    ],
    ExecutionPhase.RUNNING_TESTS: [
        ExecutionPhase.CLEARING_CONTEXT,
        ExecutionPhase.FIXING_TEST_ERRORS,
    ],
    ExecutionPhase.FIXING_TEST_ERRORS: [ExecutionPhase.RUNNING_TESTS],
    ExecutionPhase.CLEARING_CONTEXT: [
        ExecutionPhase.EXECUTING_TASK,
        ExecutionPhase.COMPLETED,
    ],
    ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION: sorted(HANDOFF_PHASES),
    ExecutionPhase.WAITING_FOR_USER: sorted(QUESTION_PHASES),
    ExecutionPhase.PAUSED: [],
    ExecutionPhase.COMPLETED: [],  # Terminal state
    ExecutionPhase.FAILED: [],  # Terminal state
}


def _build_transitions() -> Dict[ExecutionPhase, List[ExecutionPhase]]:
    transitions: Dict[ExecutionPhase, List[ExecutionPhase]] = {}
    resumable = [
        phase
        for phase in ExecutionPhase
        if phase not in (ExecutionPhase.IDLE, ExecutionPhase.PAUSED)
        and phase not in (ExecutionPhase.COMPLETED, ExecutionPhase.FAILED)
    ]
    for phase, targets in _WORKFLOW_TRANSITIONS.items():
        allowed = list(targets)
        if phase in (ExecutionPhase.COMPLETED, ExecutionPhase.FAILED):
            transitions[phase] = allowed
            continue
        if phase == ExecutionPhase.PAUSED:
            allowed.extend(resumable)
        if phase in QUESTION_PHASES:
            allowed.append(ExecutionPhase.WAITING_FOR_USER)
        if phase in HANDOFF_PHASES:
            allowed.append(ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION)
        if phase not in (ExecutionPhase.IDLE, ExecutionPhase.PAUSED):
            allowed.append(ExecutionPhase.PAUSED)
        if phase != ExecutionPhase.IDLE:
            allowed.append(ExecutionPhase.FAILED)
        transitions[phase] = list(dict.fromkeys(allowed))
    return transitions


# Valid phase transitions
VALID_TRANSITIONS: Dict[ExecutionPhase, List[ExecutionPhase]] = _build_transitions()


def is_valid_transition(from_phase: ExecutionPhase, to_phase: ExecutionPhase) -> bool:
    """Check if a phase transition is valid."""
    return to_phase in VALID_TRANSITIONS.get(from_phase, [])


def get_valid_next_phases(current_phase: ExecutionPhase) -> List[ExecutionPhase]:
    """Get list of valid next phases for a given phase."""
    return VALID_TRANSITIONS.get(current_phase, [])


def is_terminal_phase(phase: ExecutionPhase) -> bool:
    """Check if a phase is terminal (no further transitions allowed)."""
    return len(VALID_TRANSITIONS.get(phase, [])) == 0
