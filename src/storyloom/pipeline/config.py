"""Pipeline configuration loading.

Resolution order for each model default:
1. Environment variable (e.g., STORYLOOM_PAGE_MODEL)
2. ``storyloom.yaml`` (``models.page``)
3. Catalog default
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML

from storyloom.providers.models import (
    DEFAULT_COVER_MODEL,
    DEFAULT_PAGE_MODEL,
    DEFAULT_TEXT_MODEL,
)

CONFIG_FILENAME = "storyloom.yaml"
DEFAULT_DATA_DIR = ".storyloom"


@dataclass
class ModelsConfig:
    """Default models used when a request does not name one."""

    text: str = DEFAULT_TEXT_MODEL
    cover: str = DEFAULT_COVER_MODEL
    page: str = DEFAULT_PAGE_MODEL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelsConfig:
        return cls(
            text=os.getenv("STORYLOOM_TEXT_MODEL") or data.get("text") or DEFAULT_TEXT_MODEL,
            cover=os.getenv("STORYLOOM_COVER_MODEL") or data.get("cover") or DEFAULT_COVER_MODEL,
            page=os.getenv("STORYLOOM_PAGE_MODEL") or data.get("page") or DEFAULT_PAGE_MODEL,
        )


@dataclass
class RetryConfig:
    """Backoff settings for transient provider errors."""

    max_attempts: int = 3
    base_delay: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        config = cls(
            max_attempts=int(data.get("max_attempts", 3)),
            base_delay=float(data.get("base_delay", 1.0)),
        )
        if config.max_attempts < 1:
            raise ValueError("retry.max_attempts must be at least 1")
        if config.base_delay < 0:
            raise ValueError("retry.base_delay must not be negative")
        return config


@dataclass
class TimeoutsConfig:
    """Per-attempt timeouts in seconds."""

    text: float = 540.0
    cover: float = 300.0
    page: float = 240.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimeoutsConfig:
        config = cls(
            text=float(data.get("text", 540.0)),
            cover=float(data.get("cover", 300.0)),
            page=float(data.get("page", 240.0)),
        )
        if min(config.text, config.cover, config.page) <= 0:
            raise ValueError("timeouts must be positive")
        return config


@dataclass
class PipelineConfig:
    """Complete pipeline configuration.

    Attributes:
        models: Default text and image models.
        retry: Backoff settings.
        timeouts: Per-attempt timeouts.
        temperature: Sampling temperature for story text.
        thinking_budget: Optional reasoning budget for text models that take one.
        conflict_retries: Transaction retries before giving up on a write.
        data_dir: Directory for the story database and local image blobs.
    """

    models: ModelsConfig = field(default_factory=ModelsConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    temperature: float = 0.9
    thinking_budget: int | None = None
    conflict_retries: int = 25
    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR))

    @property
    def database_path(self) -> Path:
        return self.data_dir / "stories.db"

    @property
    def blobs_path(self) -> Path:
        return self.data_dir / "blobs"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        """Create config from dictionary.

        Args:
            data: Parsed ``storyloom.yaml`` content. Every section is optional.

        Returns:
            PipelineConfig instance.
        """
        thinking_budget = data.get("thinking_budget")
        conflict_retries = int(data.get("conflict_retries", 25))
        if conflict_retries < 1:
            raise ValueError("conflict_retries must be at least 1")
        return cls(
            models=ModelsConfig.from_dict(dict(data.get("models") or {})),
            retry=RetryConfig.from_dict(dict(data.get("retry") or {})),
            timeouts=TimeoutsConfig.from_dict(dict(data.get("timeouts") or {})),
            temperature=float(data.get("temperature", 0.9)),
            thinking_budget=int(thinking_budget) if thinking_budget is not None else None,
            conflict_retries=conflict_retries,
            data_dir=Path(
                os.getenv("STORYLOOM_DATA_DIR") or data.get("data_dir") or DEFAULT_DATA_DIR
            ),
        )


class PipelineConfigError(Exception):
    """Raised when the configuration file cannot be loaded."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load config from {path}: {reason}")


def load_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Load configuration from *path*, or ``./storyloom.yaml`` if present.

    A missing default file yields defaults plus environment overrides; a
    missing explicit *path* is an error.

    Raises:
        PipelineConfigError: If the file cannot be read or is invalid.
    """
    config_path = path or Path.cwd() / CONFIG_FILENAME
    if not config_path.exists():
        if path is not None:
            raise PipelineConfigError(config_path, "File not found")
        return PipelineConfig.from_dict({})

    yaml = YAML(typ="safe")
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            return PipelineConfig.from_dict({})
        if not isinstance(data, dict):
            raise PipelineConfigError(config_path, "Expected a mapping at top level")

        return PipelineConfig.from_dict(data)
    except Exception as e:
        if isinstance(e, PipelineConfigError):
            raise
        raise PipelineConfigError(config_path, str(e)) from e
