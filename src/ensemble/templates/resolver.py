"""Prompt template resolution.

Templates use ``{{ path }}`` placeholders resolved against a variable bag;
dotted paths reach into nested values. Resolution never stops at the first
missing variable: every missing required variable is reported together.
"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from ensemble.context.paths import get_path
from ensemble.exceptions import TemplateError, ValidationError

logger = structlog.get_logger()

PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.\[\]-]+)\s*\}\}")

_MISSING = object()


class TemplateVariable(BaseModel):
    """Declared template variable."""

    name: str
    required: bool = True
    default: Any = None
    description: str = ""


class PromptTemplate(BaseModel):
    """Stored prompt template."""

    id: str
    name: str = ""
    content: str
    variables: list[TemplateVariable] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class TemplateResolution(BaseModel):
    """Outcome of resolving a template."""

    success: bool
    content: str | None = None
    error: str | None = None
    used_variables: list[str] = Field(default_factory=list)
    missing_variables: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def unwrap(self) -> str:
        """Return the content or raise the resolution error.

        Raises:
            TemplateError: If resolution failed
        """
        if not self.success or self.content is None:
            raise TemplateError(self.error or "Template resolution failed", self.missing_variables)
        return self.content


class TemplateResolver(Protocol):
    """Port resolving template strings and stored templates."""

    async def resolve(self, template: str, variables: dict[str, Any]) -> TemplateResolution: ...

    async def resolve_template(
        self, template_id: str, variables: dict[str, Any]
    ) -> TemplateResolution: ...

    def has_template(self, template_id: str) -> bool: ...


def stringify(value: Any) -> str:
    """Render a variable value as prompt text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value, default=str, ensure_ascii=False)
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return str(value)


def _lookup(variables: dict[str, Any], name: str) -> Any:
    try:
        return get_path(variables, name, _MISSING)
    except ValidationError:
        return _MISSING


def extract_placeholders(content: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    return list(dict.fromkeys(PLACEHOLDER_RE.findall(content)))


def interpolate(
    content: str,
    variables: dict[str, Any],
    declared: list[TemplateVariable] | None = None,
) -> TemplateResolution:
    """Substitute placeholders in ``content``.

    Without declarations every placeholder is required. With declarations,
    a declared variable follows its ``required`` flag and default, and an
    undeclared placeholder is optional.

    Args:
        content: Template text
        variables: Variable bag; dotted placeholder names reach into it
        declared: Variable declarations of a stored template

    Returns:
        Resolution with content, or the joined missing-variable errors
    """
    declarations = {v.name: v for v in declared or []}
    used: list[str] = []
    missing: list[str] = []
    warnings: list[str] = []
    values: dict[str, str] = {}

    for name in extract_placeholders(content):
        value = _lookup(variables, name)
        declaration = declarations.get(name)

        if value is _MISSING and declaration is not None and declaration.default is not None:
            value = declaration.default

        if value is _MISSING:
            required = declaration.required if declaration else declared is None
            if required:
                missing.append(name)
            else:
                warnings.append(f"Optional variable '{name}' not provided")
            values[name] = ""
            continue

        used.append(name)
        values[name] = stringify(value)

    if missing:
        error = "; ".join(f"Missing required variable: {name}" for name in missing)
        return TemplateResolution(
            success=False,
            error=error,
            used_variables=used,
            missing_variables=missing,
            warnings=warnings,
        )

    rendered = PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), ""), content)
    return TemplateResolution(
        success=True,
        content=rendered,
        used_variables=used,
        warnings=warnings,
    )


class TemplateRegistry:
    """In-memory template resolver with registered templates."""

    def __init__(self, templates: list[PromptTemplate] | None = None) -> None:
        self._templates: dict[str, PromptTemplate] = {}
        for template in templates or []:
            self.register(template)

    def register(self, template: PromptTemplate) -> None:
        self._templates[template.id] = template
        logger.debug("template_registered", template_id=template.id)

    def get_template(self, template_id: str) -> PromptTemplate | None:
        return self._templates.get(template_id)

    def has_template(self, template_id: str) -> bool:
        return template_id in self._templates

    async def resolve(self, template: str, variables: dict[str, Any]) -> TemplateResolution:
        """Resolve an inline template; every placeholder is required."""
        resolution = interpolate(template, variables)
        self._log(resolution, template_id=None)
        return resolution

    async def resolve_template(
        self, template_id: str, variables: dict[str, Any]
    ) -> TemplateResolution:
        """Resolve a registered template by id."""
        template = self._templates.get(template_id)
        if template is None:
            return TemplateResolution(success=False, error=f"Template not found: {template_id}")

        resolution = interpolate(template.content, variables, template.variables)
        self._log(resolution, template_id=template_id)
        return resolution

    def _log(self, resolution: TemplateResolution, template_id: str | None) -> None:
        for warning in resolution.warnings:
            logger.warning("template_variable_warning", template_id=template_id, warning=warning)
        if not resolution.success:
            logger.warning(
                "template_resolution_failed",
                template_id=template_id,
                missing=resolution.missing_variables,
            )
