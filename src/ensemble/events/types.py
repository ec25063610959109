"""Event type definitions for the event bus.

Every event carries the execution id it belongs to, so subscribers can
follow one workflow, orchestration, discussion or self-critique run.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

__all__ = [
    "EventType",
    "Event",
    "WorkflowEvent",
    "StepEvent",
    "OrchestrationEvent",
    "RoundEvent",
    "ContributionEvent",
    "IterationEvent",
    "ProtocolEvent",
]


class EventType(StrEnum):
    """All event types in the system."""

    # Workflow lifecycle
    WORKFLOW_QUEUED = "workflow.queued"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_PAUSED = "workflow.paused"
    WORKFLOW_RESUMED = "workflow.resumed"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_CANCELLED = "workflow.cancelled"

    # Step lifecycle
    STEP_STARTED = "workflow.step.started"
    STEP_RETRY = "workflow.step.retry"
    STEP_COMPLETED = "workflow.step.completed"
    STEP_FAILED = "workflow.step.failed"
    STEP_SKIPPED = "workflow.step.skipped"

    # Flat orchestration patterns
    ORCHESTRATION_COMPLETED = "orchestration.completed"
    ORCHESTRATION_FAILED = "orchestration.failed"

    # Discussion protocol
    DISCUSSION_ROUND_STARTED = "discussion.round_started"
    DISCUSSION_CONTRIBUTION = "discussion.contribution"
    DISCUSSION_ROUND_COMPLETED = "discussion.round_completed"
    DISCUSSION_CONVERGED = "discussion.converged"
    DISCUSSION_COMPLETED = "discussion.completed"
    DISCUSSION_ERROR = "discussion.error"

    # Self-critique protocol
    CRITIQUE_ITERATION_STARTED = "critique.iteration_started"
    CRITIQUE_ITERATION = "critique.iteration"
    CRITIQUE_CONVERGED = "critique.converged"
    CRITIQUE_MAX_ITERATIONS = "critique.max_iterations"
    CRITIQUE_COMPLETED = "critique.completed"
    CRITIQUE_ERROR = "critique.error"


class Event(BaseModel):
    """Base class for all events."""

    type: EventType
    execution_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"use_enum_values": True}


class WorkflowEvent(Event):
    """Workflow-level transition."""

    workflow_id: str
    status: str
    progress: int = 0
    error: str | None = None
    completed_steps: int = 0
    total_steps: int = 0


class StepEvent(Event):
    """Step-level transition."""

    workflow_id: str
    step_id: str
    step_name: str = ""
    agent: str = ""
    attempt: int = 1
    result: Any = None
    error: str | None = None
    duration_ms: float | None = None


class OrchestrationEvent(Event):
    """Flat orchestration finished."""

    pattern: str
    status: str
    task_count: int = 0
    error: str | None = None
    duration_ms: float = 0.0


class RoundEvent(Event):
    """Discussion round started or completed."""

    round: int
    participant_count: int = 0
    consensus_score: float | None = None
    synthesis: str | None = None


class ContributionEvent(Event):
    """One participant's contribution to a round."""

    type: EventType = EventType.DISCUSSION_CONTRIBUTION
    round: int
    participant_id: str
    role: str
    content: str
    agreement_score: float | None = None


class IterationEvent(Event):
    """Self-critique iteration started or evaluated."""

    iteration: int
    overall_score: float | None = None
    criteria_scores: dict[str, float] = Field(default_factory=dict)
    feedback: str | None = None
    meets_threshold: bool | None = None


class ProtocolEvent(Event):
    """Protocol-level outcome (converged, completed, error)."""

    status: str | None = None
    converged: bool | None = None
    score: float | None = None
    count: int = 0
    error: str | None = None
