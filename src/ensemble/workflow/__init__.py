"""DAG workflow engine."""

from .models import (
    EngineStats,
    RetryPolicy,
    StepInput,
    StepOutput,
    StepState,
    StepStatus,
    WorkflowDefinition,
    WorkflowExecutionState,
    WorkflowPage,
    WorkflowStatus,
    WorkflowStep,
)
from .graph import DependencyGraph
from .validator import DAGValidator, ValidationResult
from .scheduler import WorkflowScheduler

__all__ = [
    "DAGValidator",
    "DependencyGraph",
    "EngineStats",
    "RetryPolicy",
    "StepInput",
    "StepOutput",
    "StepState",
    "StepStatus",
    "ValidationResult",
    "WorkflowDefinition",
    "WorkflowExecutionState",
    "WorkflowPage",
    "WorkflowScheduler",
    "WorkflowStatus",
    "WorkflowStep",
]
