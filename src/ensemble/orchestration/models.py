"""Flat task-list orchestration models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class OrchestrationPattern(StrEnum):
    """Execution strategy of an orchestration request."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"
    MAP_REDUCE = "map-reduce"
    DISCUSSION = "discussion"
    SELF_CRITIQUE = "self-critique"


class ResultStatus(StrEnum):
    """Terminal status of an orchestration or protocol run."""

    COMPLETED = "completed"
    FAILED = "failed"


class Task(BaseModel):
    """One agent call in a flat task list."""

    id: str
    agent: str
    prompt: str | None = None
    prompt_template_id: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    condition: str | None = Field(
        default=None,
        description="Boolean expression over `context`, used by the conditional pattern",
    )
    timeout_ms: int | None = Field(default=None, gt=0)


class TaskResult(BaseModel):
    """Outcome of one task."""

    task_id: str
    success: bool
    result: Any = None
    error: str | None = None
    duration_ms: float = 0.0


class OrchestrationOptions(BaseModel):
    """Pattern options."""

    max_parallel: int | None = Field(default=None, ge=1)
    items: list[Any] = Field(default_factory=list)
    discussion: dict[str, Any] | None = Field(
        default=None,
        description="DiscussionConfig fields for the discussion pattern",
    )
    critique: dict[str, Any] | None = Field(
        default=None,
        description="SelfCritiqueConfig fields for the self-critique pattern",
    )


class OrchestrationRequest(BaseModel):
    """Request to run a task list with one pattern."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    pattern: OrchestrationPattern
    tasks: list[Task]
    context: dict[str, Any] = Field(default_factory=dict)
    timeout_ms: int | None = Field(default=None, gt=0)
    options: OrchestrationOptions = Field(default_factory=OrchestrationOptions)


class OrchestrationResult(BaseModel):
    """Outcome of an orchestration request."""

    id: str
    status: ResultStatus
    pattern: OrchestrationPattern
    task_results: list[TaskResult] = Field(default_factory=list)
    aggregated_result: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
