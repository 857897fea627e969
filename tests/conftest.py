"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

import pytest

from storyloom.messaging import InMemoryMessageQueue
from storyloom.models.request import GenerationRequest, StoryCharacter
from storyloom.pipeline.config import PipelineConfig, RetryConfig
from storyloom.pipeline.notifier import LoggingNotifier
from storyloom.pipeline.runtime import StoryPipeline
from storyloom.storage.blobs import InMemoryBlobStorage
from storyloom.storage.documents import InMemoryDocumentStore
from storyloom.storage.profiles import InMemoryProfileDirectory
from tests.fixtures.fakes import (
    ART_STYLES,
    FakeTextProvider,
    ScriptedImageProvider,
    factory_from,
    no_sleep,
    story_json,
)


@pytest.fixture(autouse=True, scope="session")
def disable_langsmith_tracing() -> None:
    """Disable LangSmith tracing during test runs.

    Set LANGSMITH_TEST_TRACING=true to override for debugging.
    """
    if os.environ.get("LANGSMITH_TEST_TRACING", "").lower() != "true":
        os.environ["LANGSMITH_TRACING"] = "false"


@pytest.fixture
def make_request() -> Callable[..., GenerationRequest]:
    """Factory for a four-page request with one free-text character."""

    def _make(**overrides: Any) -> GenerationRequest:
        data: dict[str, Any] = {
            "owner_id": "owner-1",
            "theme": "a picnic on the moon",
            "mood": "cozy",
            "page_count": 4,
            "characters": (StoryCharacter(name="Mia", description="curly red hair"),),
            "text_model": "gpt-4o",
            "cover_image_model": "gpt-image-1",
            "page_image_model": "gpt-image-1",
            "art_styles": ART_STYLES,
        }
        data.update(overrides)
        return GenerationRequest(**data)

    return _make


@pytest.fixture
def fast_config() -> PipelineConfig:
    """Default config with zero backoff delay."""
    return PipelineConfig(retry=RetryConfig(max_attempts=3, base_delay=0.0))


@pytest.fixture
def text_providers() -> dict[str, FakeTextProvider]:
    return {
        "gpt-4o": FakeTextProvider("gpt-4o", [story_json()]),
        "gemini-2.5-pro": FakeTextProvider("gemini-2.5-pro", [story_json()]),
    }


@pytest.fixture
def image_providers() -> dict[str, ScriptedImageProvider]:
    return {
        "gpt-image-1": ScriptedImageProvider("gpt-image-1"),
        "gemini-2.5-flash-image-preview": ScriptedImageProvider("gemini-2.5-flash-image-preview"),
    }


@pytest.fixture
def build_pipeline(
    fast_config: PipelineConfig,
    text_providers: dict[str, FakeTextProvider],
    image_providers: dict[str, ScriptedImageProvider],
) -> Callable[..., StoryPipeline]:
    """Build an in-memory pipeline around the scripted providers."""

    def _build(
        *,
        store: Any = None,
        queue: InMemoryMessageQueue | None = None,
        profiles: InMemoryProfileDirectory | None = None,
        notifier: Any = None,
    ) -> StoryPipeline:
        return StoryPipeline(
            store=store or InMemoryDocumentStore(),
            queue=queue or InMemoryMessageQueue(),
            blobs=InMemoryBlobStorage(),
            profiles=profiles,
            notifier=notifier or LoggingNotifier(),
            config=fast_config,
            text_provider_factory=factory_from(text_providers),
            image_provider_factory=factory_from(image_providers),
            sleep=no_sleep,
        )

    return _build
