"""Prompt templates stored as YAML."""

from storyloom.prompts.loader import (
    PromptLoader,
    PromptTemplate,
    TemplateNotFoundError,
    TemplateParseError,
    TemplateRenderError,
)

__all__ = [
    "PromptLoader",
    "PromptTemplate",
    "TemplateNotFoundError",
    "TemplateParseError",
    "TemplateRenderError",
]
