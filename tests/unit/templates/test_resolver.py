"""Tests for prompt template resolution."""

from __future__ import annotations

import pytest

from ensemble.exceptions import TemplateError
from ensemble.templates.resolver import (
    PromptTemplate,
    TemplateRegistry,
    TemplateVariable,
    extract_placeholders,
    interpolate,
    stringify,
)


class TestInterpolate:
    """Tests for interpolate."""

    def test_nested_paths(self) -> None:
        resolution = interpolate(
            "Summarize {{ research.facts[0] }} for {{user.name}}",
            {"research": {"facts": ["bees dance"]}, "user": {"name": "Ada"}},
        )

        assert resolution.success is True
        assert resolution.content == "Summarize bees dance for Ada"
        assert resolution.used_variables == ["research.facts[0]", "user.name"]

    def test_all_missing_reported(self) -> None:
        """Every missing variable is reported, not only the first."""
        resolution = interpolate("{{ a }} {{ b }} {{ a }} {{ c }}", {"b": 1})

        assert resolution.success is False
        assert resolution.missing_variables == ["a", "c"]
        assert resolution.error == (
            "Missing required variable: a; Missing required variable: c"
        )
        with pytest.raises(TemplateError) as exc_info:
            resolution.unwrap()
        assert exc_info.value.missing == ["a", "c"]

    def test_values_stringified(self) -> None:
        resolution = interpolate(
            "{{ flag }}|{{ data }}|{{ none }}|{{ n }}",
            {"flag": True, "data": {"k": [1]}, "none": None, "n": 2.5},
        )

        assert resolution.content == 'true|{"k": [1]}||2.5'

    def test_declared_variables(self) -> None:
        """Declared optional variables warn, defaults fill in."""
        resolution = interpolate(
            "{{ name }}-{{ tone }}-{{ extra }}",
            {"name": "Ada"},
            declared=[
                TemplateVariable(name="name"),
                TemplateVariable(name="tone", required=False, default="calm"),
                TemplateVariable(name="extra", required=False),
            ],
        )

        assert resolution.success is True
        assert resolution.content == "Ada-calm-"
        assert resolution.warnings == ["Optional variable 'extra' not provided"]

    def test_extract_placeholders(self) -> None:
        assert extract_placeholders("{{ a }} {{b.c}} {{ a }}") == ["a", "b.c"]

    def test_stringify_plain(self) -> None:
        assert stringify("text") == "text"
        assert stringify(3) == "3"
        assert stringify(False) == "false"


class TestTemplateRegistry:
    """Tests for TemplateRegistry."""

    async def test_resolve_registered(self) -> None:
        template = PromptTemplate(
            id="t1", content="Hi {{ name }}", variables=[TemplateVariable(name="name")]
        )
        registry = TemplateRegistry([template])

        resolution = await registry.resolve_template("t1", {"name": "Bo"})

        assert registry.has_template("t1") is True
        assert resolution.unwrap() == "Hi Bo"

    async def test_unknown_template(self) -> None:
        resolution = await TemplateRegistry().resolve_template("nope", {})

        assert resolution.success is False
        assert resolution.error == "Template not found: nope"

    async def test_inline_resolve(self, templates: TemplateRegistry) -> None:
        resolution = await templates.resolve("{{ x }}", {})

        assert resolution.missing_variables == ["x"]
