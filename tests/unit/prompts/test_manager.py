"""Tests for PromptManager."""

from __future__ import annotations

import tempfile
from collections.abc import Generator
from enum import Enum
from pathlib import Path

import pytest
import yaml

from ensemble.prompts import CritiquePrompts, DiscussionPrompts, PromptManager


class _TestPrompts(str, Enum):
    GREETING = "greeting"
    NOT_A_STRING = "nested"
    MISSING = "missing"


@pytest.fixture
def temp_prompts_dir() -> Generator[Path, None, None]:
    """Create temporary directory with test prompts."""
    with tempfile.TemporaryDirectory() as tmpdir:
        prompts_dir = Path(tmpdir)
        (prompts_dir / "sample.yaml").write_text(
            yaml.dump({"greeting": "Hello ${name}", "nested": {"a": 1}})
        )
        yield prompts_dir


@pytest.fixture
def prompt_manager(temp_prompts_dir: Path) -> PromptManager:
    """Create PromptManager with test prompts."""
    return PromptManager(prompts_dir=temp_prompts_dir)


class TestPromptManager:
    """Tests for loading and rendering."""

    def test_render(self, prompt_manager: PromptManager) -> None:
        assert prompt_manager.render("sample", _TestPrompts.GREETING, name="Ada") == "Hello Ada"

    def test_missing_variable(self, prompt_manager: PromptManager) -> None:
        with pytest.raises(ValueError, match="Failed to render template"):
            prompt_manager.render("sample", _TestPrompts.GREETING)

    def test_missing_key(self, prompt_manager: PromptManager) -> None:
        with pytest.raises(KeyError):
            prompt_manager.render("sample", _TestPrompts.MISSING)

    def test_non_string_entry(self, prompt_manager: PromptManager) -> None:
        with pytest.raises(ValueError, match="must be a string"):
            prompt_manager.render("sample", _TestPrompts.NOT_A_STRING)
        assert prompt_manager.get_data("sample", _TestPrompts.NOT_A_STRING) == {"a": 1}

    def test_missing_file(self, prompt_manager: PromptManager) -> None:
        with pytest.raises(FileNotFoundError):
            prompt_manager.render("nope", _TestPrompts.GREETING)

    def test_cache_cleared(self, prompt_manager: PromptManager, temp_prompts_dir: Path) -> None:
        prompt_manager.render("sample", _TestPrompts.GREETING, name="Ada")
        (temp_prompts_dir / "sample.yaml").write_text(yaml.dump({"greeting": "Bye ${name}"}))

        assert prompt_manager.render("sample", _TestPrompts.GREETING, name="Ada") == "Hello Ada"
        prompt_manager.clear_cache()
        assert prompt_manager.render("sample", _TestPrompts.GREETING, name="Ada") == "Bye Ada"


class TestPackagedPrompts:
    """Tests for the prompts shipped with the package."""

    def test_participant_prompt(self, prompts: PromptManager) -> None:
        rendered = prompts.render(
            "discussion",
            DiscussionPrompts.PARTICIPANT_PROMPT,
            role="skeptic",
            perspective=None,
            topic="Adopt Rust?",
            round_number=2,
            previous_synthesis="Mixed views",
            previous_contributions=[{"role": "advocate", "content": "Yes"}],
        )

        assert "as: skeptic" in rendered
        assert "Your perspective" not in rendered
        assert "round 2" in rendered
        assert "[advocate]: Yes" in rendered
        assert "Agreement: N/10" in rendered

    def test_evaluation_prompt(self, prompts: PromptManager) -> None:
        rendered = prompts.render(
            "critique",
            CritiquePrompts.EVALUATION_PROMPT,
            output="draft",
            criteria=[{"name": "clarity", "description": "Clear?", "evaluation_prompt": ""}],
        )

        assert "- clarity: Clear?" in rendered
        assert '"clarity": 0.0' in rendered

    def test_improvement_prompt_uses_macros(self, prompts: PromptManager) -> None:
        rendered = prompts.render(
            "critique",
            CritiquePrompts.IMPROVEMENT_PROMPT,
            task_prompt="Write a haiku",
            output="old",
            criteria_scores={"clarity": 0.5},
            feedback="Too long",
            suggestions=["Cut a line"],
        )

        assert "- clarity: 0.50" in rendered
        assert "- Cut a line" in rendered

    def test_default_criteria(self, prompts: PromptManager) -> None:
        criteria = prompts.get_data("critique", CritiquePrompts.DEFAULT_CRITERIA)

        assert [c["name"] for c in criteria] == ["completeness", "clarity"]
