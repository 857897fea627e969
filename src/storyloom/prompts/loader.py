"""Prompt templates for story text and illustrations.

Each template is a YAML file with a ``user`` section and an optional
``system`` section, written as LangChain f-string templates: ``{name}``
is a variable and ``{{``/``}}`` are literal braces (the story template
embeds a JSON example).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from langchain_core.prompts import PromptTemplate as LCPromptTemplate
from ruamel.yaml import YAML

# Optional sections may render empty; runs of blank lines collapse to one.
_BLANK_RUN = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)+")


class TemplateNotFoundError(Exception):
    """Raised when a template file cannot be found."""

    def __init__(self, template_name: str, path: Path) -> None:
        self.template_name = template_name
        self.path = path
        super().__init__(f"Template not found: {template_name} at {path}")


class TemplateParseError(Exception):
    """Raised when a template file cannot be parsed."""

    def __init__(self, template_name: str, reason: str) -> None:
        self.template_name = template_name
        self.reason = reason
        super().__init__(f"Failed to parse template '{template_name}': {reason}")


class TemplateRenderError(Exception):
    """Raised when a template is rendered without all of its variables."""

    def __init__(self, template_name: str, missing: list[str]) -> None:
        self.template_name = template_name
        self.missing = missing
        super().__init__(
            f"Template '{template_name}' is missing variables: {', '.join(missing)}"
        )


@dataclass(frozen=True)
class PromptTemplate:
    """A loaded prompt template."""

    name: str
    description: str
    system: str
    user: str

    @classmethod
    def from_dict(cls, data: dict[str, Any], name: str) -> PromptTemplate:
        """Build a template from parsed YAML.

        Raises:
            TemplateParseError: If the ``user`` section is missing or empty.
        """
        user = data.get("user") or ""
        if not str(user).strip():
            raise TemplateParseError(name, "missing 'user' section")
        return cls(
            name=data.get("name", name),
            description=data.get("description", ""),
            system=str(data.get("system") or ""),
            user=str(user),
        )

    def variables(self, part: Literal["system", "user"] = "user") -> set[str]:
        """Variable names referenced by *part*."""
        text = getattr(self, part)
        return set(LCPromptTemplate.from_template(text).input_variables) if text else set()

    def render(self, part: Literal["system", "user"] = "user", **values: Any) -> str:
        """Fill *part* with *values*.

        Extra values are ignored, so one set of values can serve both parts.

        Raises:
            TemplateRenderError: If a referenced variable has no value.
        """
        text = getattr(self, part)
        if not text:
            return ""
        template = LCPromptTemplate.from_template(text)
        missing = sorted(set(template.input_variables) - values.keys())
        if missing:
            raise TemplateRenderError(self.name, missing)
        rendered = template.format(**{k: values[k] for k in template.input_variables})
        return _BLANK_RUN.sub("\n\n", rendered).strip()


def default_templates_path() -> Path:
    """Templates shipped inside the package."""
    return Path(__file__).parent / "templates"


class PromptLoader:
    """Load and cache prompt templates from ``{templates_path}/{name}.yaml``."""

    def __init__(self, templates_path: Path | None = None) -> None:
        self.templates_path = templates_path or default_templates_path()
        self._yaml = YAML(typ="safe")
        self._cache: dict[str, PromptTemplate] = {}

    def load(self, template_name: str) -> PromptTemplate:
        """Load a template by name.

        Raises:
            TemplateNotFoundError: If the template file doesn't exist.
            TemplateParseError: If the file is not a valid template.
        """
        cached = self._cache.get(template_name)
        if cached is not None:
            return cached

        path = self.templates_path / f"{template_name}.yaml"
        if not path.exists():
            raise TemplateNotFoundError(template_name, path)

        try:
            data = self._yaml.load(path.read_text(encoding="utf-8"))
        except Exception as e:
            raise TemplateParseError(template_name, str(e)) from e
        if not isinstance(data, dict):
            raise TemplateParseError(template_name, "Expected a mapping")

        template = PromptTemplate.from_dict(data, template_name)
        self._cache[template_name] = template
        return template

    def list_templates(self) -> list[str]:
        """Names of the available templates, sorted."""
        if not self.templates_path.is_dir():
            return []
        return sorted(p.stem for p in self.templates_path.glob("*.yaml"))
