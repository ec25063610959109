"""Prompt template resolution."""

from .resolver import (
    PromptTemplate,
    TemplateRegistry,
    TemplateResolution,
    TemplateResolver,
    TemplateVariable,
    interpolate,
    stringify,
)

__all__ = [
    "PromptTemplate",
    "TemplateRegistry",
    "TemplateResolution",
    "TemplateResolver",
    "TemplateVariable",
    "interpolate",
    "stringify",
]
