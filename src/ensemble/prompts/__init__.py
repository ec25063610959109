"""Built-in protocol prompts."""

from .keys import CritiquePrompts, DiscussionPrompts
from .manager import PromptManager, get_prompt_manager

__all__ = ["CritiquePrompts", "DiscussionPrompts", "PromptManager", "get_prompt_manager"]
