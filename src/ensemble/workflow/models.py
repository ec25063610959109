"""Workflow definition and execution state models."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(UTC)


class WorkflowStatus(StrEnum):
    """Workflow execution lifecycle."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        )


class StepStatus(StrEnum):
    """Step execution lifecycle."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class RetryPolicy(BaseModel):
    """Exponential backoff policy for failed agent calls."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0, le=10)
    initial_delay_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=30_000, ge=0)

    def delay_ms(self, retry: int) -> float:
        """Delay before the given retry (1-based), capped at max_delay_ms."""
        try:
            delay = self.initial_delay_ms * self.backoff_multiplier ** (retry - 1)
        except OverflowError:
            return float(self.max_delay_ms)
        return min(delay, float(self.max_delay_ms))


class StepInput(BaseModel):
    """Binds one prompt variable of a step to a context path, a step result or a literal."""

    model_config = ConfigDict(frozen=True)

    variable: str
    source: Literal["context", "step", "literal"] = "context"
    value: Any = Field(
        default=None,
        description="Context dot path for 'context' inputs, the value itself for 'literal'",
    )
    step_id: str | None = None


class StepOutput(BaseModel):
    """Copies a step result, or one field of it, to a context path."""

    model_config = ConfigDict(frozen=True)

    context_path: str
    field: str = Field(default="", description="Dot path into the result; empty for all of it")


class WorkflowStep(BaseModel):
    """One agent call in a workflow DAG.

    Exactly one of ``prompt`` and ``prompt_template_id`` must be set; the
    validator enforces it so every violation can be reported at once.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    agent: str
    prompt: str | None = None
    prompt_template_id: str | None = None
    variables: dict[str, Any] = Field(
        default_factory=dict,
        description="Literal template variables layered over the context",
    )
    inputs: list[StepInput] = Field(default_factory=list)
    outputs: list[StepOutput] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    condition: str | None = Field(
        default=None,
        description="Expression over the context; the step is skipped when it is false",
    )
    continue_on_error: bool = Field(
        default=False,
        description="Let dependents run even if this step fails",
    )
    retry_policy: RetryPolicy | None = None
    timeout_ms: int | None = Field(default=None, gt=0)


class WorkflowDefinition(BaseModel):
    """Immutable workflow DAG."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    steps: list[WorkflowStep] = Field(default_factory=list)
    initial_context: dict[str, Any] = Field(default_factory=dict)
    default_retry_policy: RetryPolicy | None = None
    max_parallel_steps: int | None = Field(default=None, ge=1)
    timeout_ms: int | None = Field(default=None, gt=0)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def get_step(self, step_id: str) -> WorkflowStep | None:
        return next((s for s in self.steps if s.id == step_id), None)


class StepState(BaseModel):
    """Execution state of one step."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    retry_count: int = 0
    result: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: float | None = None


class WorkflowExecutionState(BaseModel):
    """Persisted state of one workflow execution.

    Owned by the scheduler; every transition is saved to the state store
    before the next step launches.
    """

    execution_id: str
    workflow_id: str
    user_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    steps: dict[str, StepState] = Field(default_factory=dict)
    in_flight: list[str] = Field(default_factory=list)
    progress: int = Field(default=0, ge=0, le=100)
    queue_position: int | None = None
    error: str | None = None
    initial_context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def steps_with(self, *statuses: StepStatus) -> list[str]:
        return [step_id for step_id, step in self.steps.items() if step.status in statuses]

    def update_progress(self) -> int:
        """Recompute progress; running steps count half."""
        total = len(self.steps)
        if total == 0:
            self.progress = 0
            return 0
        finished = sum(1 for s in self.steps.values() if s.status.is_terminal)
        running = sum(1 for s in self.steps.values() if s.status == StepStatus.RUNNING)
        self.progress = min(100, math.floor((finished + running * 0.5) / total * 100))
        return self.progress

    def touch(self) -> None:
        self.updated_at = _now()


class WorkflowPage(BaseModel):
    """One page of executions for a user."""

    items: list[WorkflowExecutionState]
    total: int
    page: int
    page_size: int


class EngineStats(BaseModel):
    """Scheduler occupancy."""

    active: int
    queued: int
    max_concurrent: int
    max_queue_size: int
