"""Collaboration protocols: multi-agent discussion and self-critique."""

from .consensus import (
    calculate_overall_score,
    check_convergence,
    evaluate_consensus,
    extract_agreement_score,
    meets_threshold,
)
from .critique import SelfCritiqueProtocol
from .discussion import DiscussionProtocol
from .models import (
    ConsensusStrategy,
    Contribution,
    CritiqueEvaluation,
    CritiqueIteration,
    DiscussionConfig,
    DiscussionResult,
    DiscussionRound,
    FacilitatorSynthesis,
    Participant,
    ParticipantSummary,
    QualityCriterion,
    SelfCritiqueConfig,
    SelfCritiqueResult,
)

__all__ = [
    "ConsensusStrategy",
    "Contribution",
    "CritiqueEvaluation",
    "CritiqueIteration",
    "DiscussionConfig",
    "DiscussionProtocol",
    "DiscussionResult",
    "DiscussionRound",
    "FacilitatorSynthesis",
    "Participant",
    "ParticipantSummary",
    "QualityCriterion",
    "SelfCritiqueConfig",
    "SelfCritiqueProtocol",
    "SelfCritiqueResult",
    "calculate_overall_score",
    "check_convergence",
    "evaluate_consensus",
    "extract_agreement_score",
    "meets_threshold",
]
