"""Tests for condition expressions."""

from __future__ import annotations

from typing import Any

import pytest

from ensemble.orchestration.conditions import (
    ConditionError,
    compile_condition,
    evaluate_condition,
)

CONTEXT: dict[str, Any] = {
    "user": {"tier": "gold", "name": "O'Neil"},
    "scores": [0.2, 0.9],
    "flag": True,
    "retries": 4,
    "empty": None,
}


class TestEvaluate:
    """Tests for expression evaluation."""

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ('context.user.tier == "gold"', True),
            ("context.user.tier != 'gold'", False),
            ('context.user["tier"] === "gold"', True),
            ("context.scores[1] >= 0.5", True),
            ("context.scores[0] > 0.5", False),
            ("context.retries < 5 && context.flag", True),
            ("context.retries < 3 || context.flag == false", False),
            ("context.retries > 3 and not context.flag", False),
            ("!(context.retries > 3)", False),
            ("not (context.flag or context.retries > 3)", False),
            ("context.missing == null", True),
            ("context.missing.deeper == undefined", True),
            ("context.scores[5] == None", True),
            ("True", True),
            ("0", False),
            ('"text"', True),
        ],
    )
    def test_expressions(self, expression: str, expected: bool) -> None:
        assert compile_condition(expression).evaluate(CONTEXT) is expected

    def test_escaped_quote_in_string(self) -> None:
        assert compile_condition("context.user.name == 'O\\'Neil'").evaluate(CONTEXT) is True

    def test_booleans_never_equal_numbers(self) -> None:
        assert compile_condition("context.flag == 1").evaluate(CONTEXT) is False
        assert compile_condition("context.flag != 1").evaluate(CONTEXT) is True

    def test_ordering_with_null_is_false(self) -> None:
        assert compile_condition("context.empty < 1").evaluate(CONTEXT) is False
        assert compile_condition("context.empty >= 1").evaluate(CONTEXT) is False

    def test_ordering_across_types_is_false(self) -> None:
        assert compile_condition("context.user.tier > 1").evaluate(CONTEXT) is False

    def test_references_never_reach_outside_context(self) -> None:
        """Attribute-like names are only dictionary lookups."""
        condition = compile_condition("context.__class__ == null")

        assert condition.evaluate(CONTEXT) is True


class TestInvalidExpressions:
    """Tests for rejected expressions."""

    @pytest.mark.parametrize(
        "expression",
        [
            "",
            "   ",
            "context.user.tier ==",
            "(context.flag",
            "context.flag)",
            "open('x')",
            "__import__('os')",
            "context.user.tier = 'gold'",
            "context[",
            "1 + 2",
        ],
    )
    def test_rejected(self, expression: str) -> None:
        with pytest.raises(ConditionError):
            compile_condition(expression)

    def test_error_is_validation_error(self) -> None:
        with pytest.raises(ConditionError) as exc_info:
            compile_condition("foo == 1")

        assert exc_info.value.code == "CONDITION_ERROR"
        assert "Unknown identifier 'foo'" in exc_info.value.message

    def test_evaluate_condition_treats_invalid_as_false(self) -> None:
        assert evaluate_condition("eval('1')", CONTEXT) is False
        assert evaluate_condition("context.flag", CONTEXT) is True
