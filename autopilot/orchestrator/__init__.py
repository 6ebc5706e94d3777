"""Orchestration layer driving the workflow through its phases.

This package provides the state machine, the retry and fallback policies,
context budget accounting and plan storage.
"""

from .context_budget import ContextBudget, ContinuationSummary
from .execution_context import (
    ExecutionContext,
    ExecutionError,
    LogEntry,
    LogType,
    PendingQuestion,
    PendingTaskFailure,
    QuestionAnswer,
    TaskFailureResponse,
)
from .fallback_policy import FallbackPolicy, TaskFailureDecision
from .plan_storage import PlanStorage, parse_plan
from .retry_strategy import RetryStrategy, run_with_retry
from .state_machine import ExecutionStateMachine
from .workspace import WorkflowInstance, Workspace

__all__ = [
    "ContextBudget",
    "ContinuationSummary",
    "ExecutionContext",
    "ExecutionError",
    "LogEntry",
    "LogType",
    "PendingQuestion",
    "PendingTaskFailure",
    "QuestionAnswer",
    "TaskFailureResponse",
    "FallbackPolicy",
    "TaskFailureDecision",
    "PlanStorage",
    "parse_plan",
    "RetryStrategy",
    "run_with_retry",
    "ExecutionStateMachine",
    "WorkflowInstance",
    "Workspace",
]
