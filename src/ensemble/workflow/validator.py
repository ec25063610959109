"""Workflow definition validation.

Runs before scheduling and reports every violation at once, so a caller
can fix a definition in one pass. An invalid definition never starts.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from ensemble.context import paths
from ensemble.exceptions import DependencyError, ValidationError
from ensemble.orchestration.conditions import ConditionError, compile_condition

from .models import WorkflowDefinition, WorkflowStep

logger = structlog.get_logger()

STEP_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class _Color(Enum):
    WHITE = 0
    GRAY = 1
    BLACK = 2


class ValidationResult(BaseModel):
    """Outcome of validating a definition."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    dependency_errors: list[str] = Field(default_factory=list)
    cycles: list[list[str]] = Field(default_factory=list)

    def raise_for_errors(self) -> None:
        """Raise the matching error when the definition is invalid.

        Raises:
            DependencyError: If any dependency or cycle problem was found
            ValidationError: For every other violation
        """
        if self.valid:
            return
        message = f"Invalid workflow definition: {'; '.join(self.errors)}"
        if self.dependency_errors:
            raise DependencyError(message, errors=self.errors, cycles=self.cycles)
        raise ValidationError(message, errors=self.errors)


class DAGValidator:
    """Validates workflow definitions before scheduling.

    Example:
        >>> validator = DAGValidator(max_steps=50)
        >>> result = validator.validate(definition)
        >>> result.raise_for_errors()
    """

    def __init__(
        self,
        max_steps: int = 50,
        template_exists: Callable[[str], bool] | None = None,
    ) -> None:
        """Initialize validator.

        Args:
            max_steps: Maximum number of steps per definition
            template_exists: Lookup used to check prompt template ids
        """
        self.max_steps = max_steps
        self.template_exists = template_exists

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """Check step count, ids, dependencies, cycles and prompt sources.

        Args:
            definition: Workflow definition to check

        Returns:
            Result listing every violation found
        """
        errors: list[str] = []
        dependency_errors: list[str] = []
        steps = definition.steps

        if not steps:
            errors.append("Workflow must have at least one step")
        if len(steps) > self.max_steps:
            errors.append(f"Workflow has {len(steps)} steps, maximum is {self.max_steps}")

        seen: set[str] = set()
        duplicates: list[str] = []
        for step in steps:
            if not step.id.strip():
                errors.append("Step id must not be empty")
            elif not STEP_ID_RE.match(step.id):
                errors.append(
                    f"Step id '{step.id}' may only contain letters, digits, '_' and '-'"
                )
            if step.id in seen and step.id not in duplicates:
                duplicates.append(step.id)
            seen.add(step.id)
        errors.extend(f"Duplicate step id: {step_id}" for step_id in duplicates)

        for step in steps:
            for dep_id in step.dependencies:
                if dep_id == step.id:
                    dependency_errors.append(f"Step '{step.id}' cannot depend on itself")
                elif dep_id not in seen:
                    dependency_errors.append(
                        f"Step '{step.id}' depends on unknown step '{dep_id}'"
                    )

        cycles = self._find_cycles(definition)
        dependency_errors.extend(
            f"Circular dependency detected: {' -> '.join([*cycle, cycle[0]])}" for cycle in cycles
        )

        for step in steps:
            errors.extend(self._check_prompt_source(step.id, step.prompt, step.prompt_template_id))
            errors.extend(self._check_step_options(step))

        all_errors = errors + dependency_errors
        if all_errors:
            logger.warning(
                "workflow_validation_failed",
                workflow_id=definition.id,
                error_count=len(all_errors),
            )

        return ValidationResult(
            valid=not all_errors,
            errors=all_errors,
            dependency_errors=dependency_errors,
            cycles=cycles,
        )

    def _check_prompt_source(
        self, step_id: str, prompt: str | None, template_id: str | None
    ) -> list[str]:
        if prompt is not None and template_id is not None:
            return [f"Step '{step_id}' must set only one of prompt and prompt_template_id"]
        if prompt is None and template_id is None:
            return [f"Step '{step_id}' must set prompt or prompt_template_id"]
        if prompt is not None and not prompt.strip():
            return [f"Step '{step_id}' has an empty prompt"]
        if template_id is not None:
            if not template_id.strip():
                return [f"Step '{step_id}' has an empty prompt_template_id"]
            if self.template_exists is not None and not self.template_exists(template_id):
                return [f"Step '{step_id}' references unknown template '{template_id}'"]
        return []

    def _check_step_options(self, step: WorkflowStep) -> list[str]:
        """Condition syntax, input bindings and output paths."""
        problems: list[str] = []
        if step.condition is not None:
            try:
                compile_condition(step.condition)
            except ConditionError as e:
                problems.append(f"Step '{step.id}' has an invalid condition: {e.message}")

        for binding in step.inputs:
            if binding.source == "step" and binding.step_id not in step.dependencies:
                problems.append(
                    f"Step '{step.id}' input '{binding.variable}' reads step "
                    f"'{binding.step_id}', which is not one of its dependencies"
                )
            elif binding.source == "context" and not _is_path(binding.value):
                problems.append(
                    f"Step '{step.id}' input '{binding.variable}' needs a context path"
                )

        for mapping in step.outputs:
            if not _is_path(mapping.context_path):
                problems.append(
                    f"Step '{step.id}' output has an invalid context path "
                    f"'{mapping.context_path}'"
                )
            if mapping.field and not _is_path(mapping.field):
                problems.append(f"Step '{step.id}' output has an invalid field '{mapping.field}'")
        return problems

    def _find_cycles(self, definition: WorkflowDefinition) -> list[list[str]]:
        """Three-colour DFS over dependency edges.

        Each back edge yields the cycle on the current DFS path; a cycle is
        reported once however many of its members the search starts from.
        """
        graph: dict[str, list[str]] = {}
        for step in definition.steps:
            graph.setdefault(step.id, [])
            graph[step.id].extend(d for d in step.dependencies if d != step.id)

        color = {node: _Color.WHITE for node in graph}
        path: list[str] = []
        cycles: list[list[str]] = []
        reported: set[frozenset[str]] = set()

        def visit(node: str) -> None:
            color[node] = _Color.GRAY
            path.append(node)
            for dep in graph[node]:
                if dep not in color:
                    continue
                if color[dep] is _Color.GRAY:
                    members = path[path.index(dep) :]
                    key = frozenset(members)
                    if key not in reported:
                        reported.add(key)
                        cycles.append(list(members))
                elif color[dep] is _Color.WHITE:
                    visit(dep)
            path.pop()
            color[node] = _Color.BLACK

        for node in graph:
            if color[node] is _Color.WHITE:
                visit(node)

        return cycles


def _is_path(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        paths.parse_path(value)
    except ValidationError:
        return False
    return True
