"""Flat task-list orchestration patterns."""

from .conditions import Condition, ConditionError, compile_condition, evaluate_condition
from .executor import TaskExecutor
from .models import (
    OrchestrationOptions,
    OrchestrationPattern,
    OrchestrationRequest,
    OrchestrationResult,
    ResultStatus,
    Task,
    TaskResult,
)
from .patterns import Orchestrator

__all__ = [
    "Condition",
    "ConditionError",
    "OrchestrationOptions",
    "OrchestrationPattern",
    "OrchestrationRequest",
    "OrchestrationResult",
    "Orchestrator",
    "ResultStatus",
    "Task",
    "TaskExecutor",
    "TaskResult",
    "compile_condition",
    "evaluate_condition",
]
