"""Tests for the story orchestrator."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import pytest

from storyloom.messaging import COVER_TOPIC, InMemoryMessageQueue
from storyloom.models.jobs import CoverGenerationJob
from storyloom.models.request import CharacterProfile, StoryCharacter
from storyloom.models.story import FailureKind, GenerationPhase, StoryRecord
from storyloom.pipeline.errors import OrchestratorError, StructuralError
from storyloom.pipeline.fallback import FallbackResolver
from storyloom.pipeline.orchestrator import (
    Orchestrator,
    parse_story_json,
    repair_json,
    validate_story,
)
from storyloom.pipeline.retry import RetryExecutor
from storyloom.providers.base import ProviderMalformedResponseError, ProviderRateLimitError
from storyloom.storage.documents import InMemoryDocumentStore
from storyloom.storage.profiles import InMemoryProfileDirectory
from tests.fixtures.fakes import FakeTextProvider, factory_from, no_sleep, story_json

TODAY = date(2025, 6, 1)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue()


@pytest.fixture
def profiles() -> InMemoryProfileDirectory:
    return InMemoryProfileDirectory(
        {
            "owner-1": [
                CharacterProfile(
                    profile_id="child-a",
                    name="Mia",
                    birth_date=date(2020, 3, 1),
                    appearance="short brown hair, yellow raincoat",
                ),
                CharacterProfile(profile_id="child-b", name="Leo", birth_date=date(2018, 9, 1)),
                CharacterProfile(profile_id="pet", name="Biscuit", appearance="a small grey cat"),
            ]
        }
    )


@pytest.fixture
def make_orchestrator(store, queue, profiles, text_providers):
    def _make(**kwargs) -> Orchestrator:
        return Orchestrator(
            store,
            queue,
            profiles,
            FallbackResolver(RetryExecutor(3, 0.0, sleep=no_sleep)),
            factory_from(text_providers),
            today=lambda: TODAY,
            **kwargs,
        )

    return _make


class TestParsing:
    def test_repair_strips_fences_and_trailing_commas(self) -> None:
        raw = '```json\n{"title": "T", "pages": [{"text": "a"},],}\n```'
        assert parse_story_json(raw, model="m") == {"title": "T", "pages": [{"text": "a"}]}

    def test_repair_ignores_surrounding_chatter(self) -> None:
        assert repair_json('Here you go: {"a": 1} Enjoy!') == '{"a": 1}'

    def test_non_json_is_malformed(self) -> None:
        with pytest.raises(ProviderMalformedResponseError):
            parse_story_json("Once upon a time", model="m")

    def test_page_count_mismatch_is_structural(self) -> None:
        data = parse_story_json(story_json(page_count=3), model="m")
        with pytest.raises(StructuralError, match="expected 4 pages, got 3"):
            validate_story(data, 4)

    def test_missing_field_is_structural(self) -> None:
        with pytest.raises(StructuralError, match="coverImagePrompt"):
            validate_story({"title": "T", "pages": [{"text": "a", "imagePrompt": "b"}]}, 1)


class TestCharacters:
    @pytest.mark.asyncio()
    async def test_age_range_spans_child_profiles(self, make_orchestrator, make_request) -> None:
        request = make_request(
            characters=(
                StoryCharacter(name="Mia", profile_id="child-a"),
                StoryCharacter(name="Leo", profile_id="child-b"),
            )
        )
        orchestrator = make_orchestrator()

        _, ages = await orchestrator.resolve_characters(request)

        assert sorted(ages) == [5, 6]
        assert orchestrator.age_range(ages, request.target_age) == (5, 6)

    def test_age_range_defaults_to_target_age(self) -> None:
        assert Orchestrator.age_range([], 7) == (7, 7)

    @pytest.mark.asyncio()
    async def test_description_overrides_profile_appearance(
        self, make_orchestrator, make_request
    ) -> None:
        request = make_request(
            characters=(
                StoryCharacter(name="Mia", profile_id="child-a", description="wearing a tiara"),
                StoryCharacter(name="Biscuit", profile_id="pet"),
            )
        )

        sketches, ages = await make_orchestrator().resolve_characters(request)

        assert [s.render() for s in sketches] == [
            "Mia: wearing a tiara",
            "Biscuit: a small grey cat",
        ]
        assert ages == [5]

    @pytest.mark.asyncio()
    async def test_missing_profile_is_skipped(self, make_orchestrator, make_request) -> None:
        request = make_request(
            characters=(
                StoryCharacter(name="Ghost", profile_id="deleted"),
                StoryCharacter(name="Kept", profile_id="deleted-too", description="tall"),
            )
        )

        sketches, ages = await make_orchestrator().resolve_characters(request)

        assert [s.name for s in sketches] == ["Kept"]
        assert ages == []


class TestGenerate:
    @pytest.mark.asyncio()
    async def test_creates_record_and_publishes_cover_job(
        self, make_orchestrator, make_request, store, queue
    ) -> None:
        story_id = await make_orchestrator().generate(make_request())

        record = StoryRecord.from_document(store.get(story_id))
        assert record.phase is GenerationPhase.TEXT_COMPLETE
        assert record.owner_id == "owner-1"
        assert record.title == "The Moon Picnic"
        assert [p.text for p in record.pages] == [f"Page {i + 1} text." for i in range(4)]
        assert all(not p.is_done for p in record.pages)
        assert record.images_generated == 0
        assert record.total_images == 4
        assert record.metadata.text_model == "gpt-4o"
        assert not record.metadata.text_model_fallback
        assert record.metadata.character_descriptions == "Mia: curly red hair"

        (payload,) = queue.published_on(COVER_TOPIC)
        job = CoverGenerationJob.model_validate(payload)
        assert job.story_id == story_id
        assert job.page_prompts == tuple(f"Scene {i + 1}" for i in range(4))
        assert job.art_styles == make_request().art_styles

    @pytest.mark.asyncio()
    async def test_prompt_reflects_request(
        self, make_orchestrator, make_request, text_providers
    ) -> None:
        await make_orchestrator().generate(make_request(should_rhyme=True))

        ((system, user),) = text_providers["gpt-4o"].calls
        assert "Main character(s): Mia" in user
        assert "rhyming verse" in user
        assert system

    @pytest.mark.asyncio()
    async def test_malformed_output_falls_back_to_next_model(
        self, make_orchestrator, make_request, text_providers, store
    ) -> None:
        text_providers["gpt-4o"] = FakeTextProvider("gpt-4o", ["I can't write JSON today"])

        story_id = await make_orchestrator().generate(make_request())

        record = StoryRecord.from_document(store.get(story_id))
        assert record.metadata.text_model == "gemini-2.5-pro"
        assert record.metadata.requested_text_model == "gpt-4o"
        assert record.metadata.text_model_fallback
        # Not transient, so no retry on the primary
        assert len(text_providers["gpt-4o"].calls) == 1

    @pytest.mark.asyncio()
    async def test_transient_error_retried_on_same_model(
        self, make_orchestrator, make_request, text_providers, store
    ) -> None:
        text_providers["gpt-4o"] = FakeTextProvider(
            "gpt-4o", [ProviderRateLimitError("openai", "slow down"), story_json()]
        )

        story_id = await make_orchestrator().generate(make_request())

        assert StoryRecord.from_document(store.get(story_id)).metadata.text_model == "gpt-4o"
        assert len(text_providers["gpt-4o"].calls) == 2
        assert text_providers["gemini-2.5-pro"].calls == []

    @pytest.mark.asyncio()
    async def test_structural_error_persists_nothing(
        self, make_orchestrator, make_request, text_providers, store, queue
    ) -> None:
        text_providers["gpt-4o"] = FakeTextProvider("gpt-4o", [story_json(page_count=3)])

        with pytest.raises(OrchestratorError) as exc_info:
            await make_orchestrator().generate(make_request())

        assert exc_info.value.kind is FailureKind.SERVICE_UNAVAILABLE
        assert not store._docs
        assert queue.published == []

    @pytest.mark.asyncio()
    async def test_exhausted_text_models(
        self, make_orchestrator, make_request, text_providers, queue
    ) -> None:
        for model in ("gpt-4o", "gemini-2.5-pro"):
            text_providers[model] = FakeTextProvider(
                model, [ProviderRateLimitError(model, "quota")]
            )

        with pytest.raises(OrchestratorError, match="try again later"):
            await make_orchestrator().generate(make_request())

        assert len(text_providers["gpt-4o"].calls) == 3
        assert len(text_providers["gemini-2.5-pro"].calls) == 3
        assert queue.published == []

    @pytest.mark.asyncio()
    async def test_unpublishable_cover_job_fails_the_record(
        self, make_orchestrator, make_request, store, queue
    ) -> None:
        queue.publish = AsyncMock(side_effect=ConnectionError("broker unreachable"))

        with pytest.raises(OrchestratorError) as exc_info:
            await make_orchestrator().generate(make_request())

        error = exc_info.value
        assert error.kind is FailureKind.SERVICE_UNAVAILABLE
        assert isinstance(error.__cause__, ConnectionError)
        record = StoryRecord.from_document(store.get(error.story_id))
        assert record.phase is GenerationPhase.FAILED
        assert record.failure_kind is FailureKind.SERVICE_UNAVAILABLE
        assert record.error_message.startswith("Cover: ")
