"""Prompt key enums for type-safe prompt management."""

from enum import Enum


class DiscussionPrompts(str, Enum):
    """Prompt keys for the discussion protocol."""

    PARTICIPANT_PROMPT = "participant_prompt"
    FACILITATOR_PROMPT = "facilitator_prompt"


class CritiquePrompts(str, Enum):
    """Prompt keys for the self-critique protocol."""

    EVALUATION_PROMPT = "evaluation_prompt"
    IMPROVEMENT_PROMPT = "improvement_prompt"
    DEFAULT_CRITERIA = "default_criteria"
