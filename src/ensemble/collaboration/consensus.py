"""Scoring helpers for the collaboration protocols.

Pure functions: consensus over a round's contributions, convergence over
a score history, weighted quality scores over criteria.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from typing import Any

from .models import ConsensusStrategy, Contribution, DiscussionRound, QualityCriterion

_AGREEMENT_PATTERNS = (
    re.compile(
        r"agreement\s*(?:level|score|rating)?\s*(?:is|of)?\s*[:=]?\s*(\d+(?:\.\d+)?)\s*(/\s*10\b)?",
        re.IGNORECASE,
    ),
    re.compile(r"(\d+(?:\.\d+)?)\s*(/\s*10\b)?\s*agreement", re.IGNORECASE),
    re.compile(
        r"\bagree\s*(?:at|with)?\s*(?:an?\s+)?(\d+(?:\.\d+)?)\s*(/\s*10\b)?", re.IGNORECASE
    ),
)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def extract_agreement_score(content: str) -> float | None:
    """Self-reported agreement in a contribution, normalised to [0, 1].

    Understands ``Agreement: 8/10``, ``agreement level 0.7``, ``7/10 agreement``
    and ``I agree at 8``. Values above 1 are read as a score out of ten.

    Returns:
        The score, or None when the text reports none
    """
    for pattern in _AGREEMENT_PATTERNS:
        match = pattern.search(content)
        if match is None:
            continue
        value = float(match.group(1))
        if match.group(2) or value > 1:
            value /= 10
        return min(max(value, 0.0), 1.0)
    return None


def normalize_score(value: Any) -> float | None:
    """Coerce a reported score into [0, 1]; None if it is not a number."""
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        return None
    try:
        score = float(value)
    except ValueError:
        return None
    if score > 1:
        score /= 10
    return min(max(score, 0.0), 1.0)


def evaluate_consensus(
    contributions: Sequence[Contribution],
    strategy: ConsensusStrategy | str,
    facilitator_score: float | None = None,
) -> float:
    """Reduce a round's agreement scores to one consensus score.

    Contributions without a score are left out entirely; they do not
    count as zero.

    Args:
        contributions: Successful contributions of the round
        strategy: unanimous (min), majority (mean), weighted
            (weight-averaged) or facilitator (reported score)
        facilitator_score: Score reported by the facilitator

    Returns:
        Consensus score, 0.0 when no contribution carries a score
    """
    if strategy == ConsensusStrategy.FACILITATOR and facilitator_score is not None:
        return facilitator_score

    scored = [c for c in contributions if c.agreement_score is not None]
    if not scored:
        return 0.0

    scores = [c.agreement_score for c in scored if c.agreement_score is not None]
    if strategy == ConsensusStrategy.UNANIMOUS:
        return min(scores)
    if strategy == ConsensusStrategy.WEIGHTED:
        total_weight = sum(c.weight for c in scored)
        return sum((c.agreement_score or 0.0) * c.weight for c in scored) / total_weight
    return sum(scores) / len(scores)


def check_convergence(
    history: Sequence[DiscussionRound] | Sequence[float], threshold: float
) -> bool:
    """Whether a discussion has converged.

    True when the latest score reaches the threshold, or when scores never
    went down and their mean is at least 90% of the threshold.
    """
    if not history:
        return False

    scores = [
        item.consensus_score if isinstance(item, DiscussionRound) else float(item)
        for item in history
    ]
    if scores[-1] >= threshold:
        return True

    non_decreasing = all(later >= earlier for earlier, later in zip(scores, scores[1:]))
    return non_decreasing and sum(scores) / len(scores) >= 0.9 * threshold


def calculate_overall_score(
    criteria_scores: dict[str, float], criteria: Sequence[QualityCriterion]
) -> float:
    """Weighted mean of criterion scores; a missing score counts as 0."""
    total_weight = sum(c.weight for c in criteria)
    if total_weight <= 0:
        return 0.0
    weighted = sum(criteria_scores.get(c.name, 0.0) * c.weight for c in criteria)
    return weighted / total_weight


def meets_threshold(
    criteria_scores: dict[str, float], criteria: Sequence[QualityCriterion]
) -> bool:
    """Every criterion reaches its own threshold."""
    return all(criteria_scores.get(c.name, 0.0) >= c.threshold for c in criteria)


def parse_json_object(payload: Any) -> dict[str, Any] | None:
    """Pull a JSON object out of an agent result.

    Dict results are returned as-is; text results are searched for the
    outermost ``{...}`` span, so prose around the JSON is tolerated.
    """
    if isinstance(payload, dict):
        return payload
    if not isinstance(payload, str):
        return None

    match = _JSON_OBJECT_RE.search(payload)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
