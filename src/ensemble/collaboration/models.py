"""Discussion and self-critique models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ensemble.orchestration.models import OrchestrationPattern, ResultStatus, TaskResult


def _now() -> datetime:
    return datetime.now(UTC)


class ConsensusStrategy(StrEnum):
    """How a round's agreement signals reduce to one score."""

    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    WEIGHTED = "weighted"
    FACILITATOR = "facilitator"


# Discussion


class Participant(BaseModel):
    """Agent taking part in a discussion under a role."""

    agent: str
    role: str
    weight: float = Field(default=1.0, gt=0)
    id: str | None = None
    perspective: str | None = None
    system_prompt: str | None = None


class DiscussionConfig(BaseModel):
    """Discussion settings; unset fields fall back to DISCUSSION_* settings."""

    max_rounds: int | None = Field(default=None, ge=1)
    participants: list[Participant] = Field(default_factory=list)
    consensus_strategy: ConsensusStrategy | None = None
    convergence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    facilitator_agent: str | None = None
    contribution_prompt_template: str | None = None
    synthesis_prompt_template: str | None = None

    @model_validator(mode="after")
    def assign_participant_ids(self) -> DiscussionConfig:
        for index, participant in enumerate(self.participants):
            if participant.id is None:
                participant.id = f"participant_{index}"
        return self


class Contribution(BaseModel):
    """One participant's answer in one round."""

    participant_id: str
    role: str
    content: str
    agreement_score: float | None = Field(default=None, ge=0.0, le=1.0)
    weight: float = Field(default=1.0, gt=0)
    timestamp: datetime = Field(default_factory=_now)


class FacilitatorSynthesis(BaseModel):
    """Structured facilitator answer."""

    model_config = ConfigDict(populate_by_name=True)

    synthesis: str = ""
    consensus_score: float = Field(default=0.5, alias="consensusScore")
    agreements: list[str] = Field(default_factory=list)
    disagreements: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list, alias="nextSteps")


class DiscussionRound(BaseModel):
    """Contributions and consensus of one round."""

    round: int = Field(ge=1)
    contributions: list[Contribution] = Field(default_factory=list)
    synthesis: str | None = None
    consensus_score: float = 0.0
    agreements: list[str] = Field(default_factory=list)
    disagreements: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=_now)


class ParticipantSummary(BaseModel):
    """Per-participant totals over a discussion."""

    participant_id: str
    role: str
    contributions: int = 0
    agreement_rate: float = 0.0


class DiscussionResult(BaseModel):
    """Outcome of a discussion."""

    id: str
    status: ResultStatus
    pattern: OrchestrationPattern = OrchestrationPattern.DISCUSSION
    topic: str
    rounds: list[DiscussionRound] = Field(default_factory=list)
    converged: bool = False
    final_consensus: str = ""
    consensus_score: float = 0.0
    participant_summaries: dict[str, ParticipantSummary] = Field(default_factory=dict)
    task_results: list[TaskResult] = Field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None


# Self-critique


class QualityCriterion(BaseModel):
    """One axis an output is scored on."""

    name: str
    description: str = ""
    evaluation_prompt: str = ""
    weight: float = Field(default=1.0, gt=0)
    threshold: float = Field(default=0.7, ge=0.0, le=1.0)


class SelfCritiqueConfig(BaseModel):
    """Self-critique settings; unset fields fall back to CRITIQUE_* settings."""

    max_iterations: int | None = Field(default=None, ge=1, le=10)
    quality_criteria: list[QualityCriterion] = Field(default_factory=list)
    stop_on_quality_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    evaluator_agent: str | None = None
    evaluation_prompt_template: str | None = None
    improvement_prompt_template: str | None = None


class CritiqueEvaluation(BaseModel):
    """Evaluator verdict on one output."""

    overall_score: float
    criteria_scores: dict[str, float] = Field(default_factory=dict)
    feedback: str = ""
    suggestions: list[str] = Field(default_factory=list)
    meets_threshold: bool = False


class CritiqueIteration(BaseModel):
    """Output and evaluation of one iteration."""

    iteration: int = Field(ge=1)
    output: Any = None
    evaluation: CritiqueEvaluation
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=_now)


class SelfCritiqueResult(BaseModel):
    """Outcome of a self-critique run."""

    id: str
    status: ResultStatus
    pattern: OrchestrationPattern = OrchestrationPattern.SELF_CRITIQUE
    iterations: list[CritiqueIteration] = Field(default_factory=list)
    converged: bool = False
    final_output: Any = None
    final_score: float = 0.0
    task_results: list[TaskResult] = Field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def quality_improvement(self) -> float:
        """Final score minus the first iteration's score."""
        if len(self.iterations) < 2:
            return 0.0
        return self.final_score - self.iterations[0].evaluation.overall_score
