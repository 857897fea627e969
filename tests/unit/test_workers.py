"""Tests for the cover and page workers."""

from __future__ import annotations

import base64
import re
from unittest.mock import AsyncMock

import pytest

from storyloom.messaging import COVER_TOPIC, PAGE_TOPIC
from storyloom.models.jobs import PageGenerationJob
from storyloom.models.story import FailureKind, GenerationPhase
from storyloom.pipeline.workers import PageOutcome, PageWorker, mark_story_failed
from storyloom.providers.base import (
    ProviderConnectionError,
    ProviderContentPolicyError,
    ProviderModelError,
)
from storyloom.providers.image import ImageResult

PRIMARY = "gpt-image-1"
FALLBACK = "gemini-2.5-flash-image-preview"


class FailingNotifier:
    async def notify(self, owner_id: str, story_id: str, title: str) -> None:
        raise ProviderConnectionError("push", "gateway down")


@pytest.fixture
def pipeline(build_pipeline):
    return build_pipeline()


@pytest.fixture
def submit(pipeline, make_request):
    """Run the orchestrator and return ``(story_id, cover_payload)``."""

    async def _submit(**overrides):
        story_id = await pipeline.submit(make_request(**overrides))
        (payload,) = pipeline.queue.published_on(COVER_TOPIC)
        return story_id, payload

    return _submit


@pytest.fixture
def covered(pipeline, submit):
    """Submit a story and commit its cover; returns ``(story_id, page_payloads)``."""

    async def _covered(**overrides):
        story_id, cover_payload = await submit(**overrides)
        await pipeline.cover_worker.handle(cover_payload)
        return story_id, pipeline.queue.published_on(PAGE_TOPIC)

    return _covered


class TestCoverWorker:
    @pytest.mark.asyncio()
    async def test_commits_cover_and_fans_out(self, pipeline, covered) -> None:
        story_id, page_payloads = await covered()

        record = pipeline.record(story_id)
        assert record.phase is GenerationPhase.COVER_COMPLETE
        assert re.fullmatch(
            rf"stories/owner-1/{story_id}/cover-[0-9a-f]{{12}}\.png", record.cover_image_url
        )
        assert record.metadata.cover.model == PRIMARY
        assert not record.metadata.cover.used_fallback

        jobs = [PageGenerationJob.model_validate(p) for p in page_payloads]
        assert [job.page_index for job in jobs] == [0, 1, 2, 3]
        assert [job.image_prompt for job in jobs] == [f"Scene {i + 1}" for i in range(4)]
        cover_bytes = pipeline.blobs.objects[record.cover_image_url]
        for job in jobs:
            assert base64.b64decode(job.consistency.image_b64) == cover_bytes
            assert job.consistency.storage_ref == record.cover_image_url

    @pytest.mark.asyncio()
    async def test_content_policy_moves_to_next_style(
        self, pipeline, covered, image_providers
    ) -> None:
        image_providers[PRIMARY].failures = {
            "watercolor": ProviderContentPolicyError(PRIMARY, "safety system")
        }

        story_id, _ = await covered()

        provenance = pipeline.record(story_id).metadata.cover
        assert provenance.model == PRIMARY
        assert provenance.style_index == 1
        assert "paper cutout" in provenance.prompt
        assert provenance.attempts == 2

    @pytest.mark.asyncio()
    async def test_exhaustion_fails_story_without_page_jobs(
        self, pipeline, covered, image_providers
    ) -> None:
        for model in (PRIMARY, FALLBACK):
            image_providers[model].failures = {"*": ProviderModelError(model, "unavailable")}

        story_id, page_payloads = await covered()

        record = pipeline.record(story_id)
        assert record.phase is GenerationPhase.FAILED
        assert record.failure_kind is FailureKind.SERVICE_UNAVAILABLE
        assert record.error_message.startswith("Cover: ")
        assert record.cover_image_url is None
        assert page_payloads == []
        assert pipeline.blobs.objects == {}
        # A non-content failure abandons the remaining styles
        assert len(image_providers[PRIMARY].prompts) == 1
        assert len(image_providers[FALLBACK].prompts) == 1

    @pytest.mark.asyncio()
    async def test_redelivery_republishes_without_regenerating(
        self, pipeline, submit, image_providers
    ) -> None:
        story_id, cover_payload = await submit()
        await pipeline.cover_worker.handle(cover_payload)
        await pipeline.cover_worker.handle(cover_payload)

        assert len(image_providers[PRIMARY].prompts) == 1
        assert len(pipeline.queue.published_on(PAGE_TOPIC)) == 8
        assert pipeline.record(story_id).phase is GenerationPhase.COVER_COMPLETE

    @pytest.mark.asyncio()
    async def test_redelivery_keeps_cover_content_type(
        self, pipeline, submit, image_providers
    ) -> None:
        image_providers[PRIMARY].generate = AsyncMock(
            return_value=ImageResult(image_data=b"jpeg cover", content_type="image/jpeg")
        )
        story_id, cover_payload = await submit()
        await pipeline.cover_worker.handle(cover_payload)
        await pipeline.cover_worker.handle(cover_payload)

        assert pipeline.record(story_id).cover_image_url.endswith(".jpg")
        redelivered = pipeline.queue.published_on(PAGE_TOPIC)[4:]
        jobs = [PageGenerationJob.model_validate(p) for p in redelivered]
        assert {job.consistency.content_type for job in jobs} == {"image/jpeg"}
        assert jobs[0].consistency.to_image().image_data == b"jpeg cover"

    @pytest.mark.asyncio()
    async def test_skips_failed_story(self, pipeline, submit, image_providers) -> None:
        story_id, cover_payload = await submit()
        await mark_story_failed(
            pipeline.store, story_id, ProviderModelError(PRIMARY, "x"), subject="Cover"
        )

        await pipeline.cover_worker.handle(cover_payload)

        assert image_providers[PRIMARY].prompts == []
        assert pipeline.queue.published_on(PAGE_TOPIC) == []


class TestPageWorker:
    @pytest.mark.asyncio()
    async def test_commit_updates_slot_and_counter(
        self, pipeline, covered, image_providers
    ) -> None:
        story_id, page_payloads = await covered()

        outcome = await pipeline.page_worker.handle(page_payloads[2])

        assert outcome is PageOutcome.COMMITTED
        record = pipeline.record(story_id)
        assert record.images_generated == 1
        assert re.fullmatch(
            rf"stories/owner-1/{story_id}/page-2-[0-9a-f]{{12}}\.png", record.pages[2].image_url
        )
        assert [p.is_done for p in record.pages] == [False, False, True, False]
        assert record.metadata.pages["2"].model == PRIMARY
        assert record.phase is GenerationPhase.COVER_COMPLETE
        # Pages are drawn from the committed cover
        (reference,) = image_providers[PRIMARY].references
        assert reference.image_data == pipeline.blobs.objects[record.cover_image_url]

    @pytest.mark.asyncio()
    async def test_duplicate_delivery_is_redundant(
        self, pipeline, covered, image_providers
    ) -> None:
        story_id, page_payloads = await covered()
        await pipeline.page_worker.handle(page_payloads[0])
        calls = len(image_providers[PRIMARY].prompts)

        outcome = await pipeline.page_worker.handle(page_payloads[0])

        assert outcome is PageOutcome.REDUNDANT
        assert len(image_providers[PRIMARY].prompts) == calls
        assert pipeline.record(story_id).images_generated == 1

    @pytest.mark.asyncio()
    async def test_converge_rechecks_slot_inside_transaction(self, pipeline, covered) -> None:
        story_id, page_payloads = await covered()
        job = PageGenerationJob.model_validate(page_payloads[1])
        asset = await pipeline.page_worker.generator.generate(job)

        first = await pipeline.store.run_transaction(
            lambda txn: PageWorker.converge(txn, story_id, 1, asset)
        )
        second = await pipeline.store.run_transaction(
            lambda txn: PageWorker.converge(txn, story_id, 1, asset)
        )

        assert (first, second) == (PageOutcome.COMMITTED, PageOutcome.REDUNDANT)
        assert pipeline.record(story_id).images_generated == 1

    @pytest.mark.asyncio()
    async def test_losing_duplicate_does_not_replace_committed_bytes(
        self, pipeline, covered, image_providers
    ) -> None:
        story_id, page_payloads = await covered()
        job = PageGenerationJob.model_validate(page_payloads[1])
        generator = pipeline.page_worker.generator
        first = await generator.generate(job)
        image_providers[PRIMARY].edit = AsyncMock(
            return_value=ImageResult(image_data=b"a different drawing", content_type="image/png")
        )
        second = await generator.generate(job)

        outcomes = [
            await pipeline.store.run_transaction(
                lambda txn, asset=asset: PageWorker.converge(txn, story_id, 1, asset)
            )
            for asset in (first, second)
        ]

        assert outcomes == [PageOutcome.COMMITTED, PageOutcome.REDUNDANT]
        assert first.storage_ref != second.storage_ref
        committed = pipeline.record(story_id).pages[1].image_url
        assert committed == first.storage_ref
        assert pipeline.blobs.objects[committed] == first.image.image_data

    @pytest.mark.asyncio()
    async def test_last_page_completes_and_notifies_once(self, pipeline, covered) -> None:
        story_id, page_payloads = await covered()

        outcomes = [await pipeline.page_worker.handle(p) for p in page_payloads]
        await pipeline.page_worker.handle(page_payloads[3])

        assert outcomes == [PageOutcome.COMMITTED] * 3 + [PageOutcome.COMPLETED]
        record = pipeline.record(story_id)
        assert record.phase is GenerationPhase.ALL_COMPLETE
        assert record.images_generated == record.total_images == 4
        assert pipeline.notifier.sent == [("owner-1", story_id, "The Moon Picnic")]

    @pytest.mark.asyncio()
    async def test_failed_story_discards_page_writes(
        self, pipeline, covered, image_providers
    ) -> None:
        story_id, page_payloads = await covered()
        job = PageGenerationJob.model_validate(page_payloads[0])
        asset = await pipeline.page_worker.generator.generate(job)
        await mark_story_failed(
            pipeline.store, story_id, ProviderModelError(PRIMARY, "x"), subject="Page 2"
        )
        calls = len(image_providers[PRIMARY].prompts)

        assert await pipeline.page_worker.handle(page_payloads[1]) is PageOutcome.STORY_FAILED
        late = await pipeline.store.run_transaction(
            lambda txn: PageWorker.converge(txn, story_id, 0, asset)
        )

        assert late is PageOutcome.STORY_FAILED
        assert len(image_providers[PRIMARY].prompts) == calls
        record = pipeline.record(story_id)
        assert record.phase is GenerationPhase.FAILED
        assert record.images_generated == 0
        assert not any(p.is_done for p in record.pages)

    @pytest.mark.asyncio()
    async def test_exhausted_page_fails_story(self, pipeline, covered, image_providers) -> None:
        story_id, page_payloads = await covered()
        for model in (PRIMARY, FALLBACK):
            image_providers[model].failures = {
                "*": ProviderContentPolicyError(model, "blocked by safety system")
            }

        outcome = await pipeline.page_worker.handle(page_payloads[1])

        assert outcome is PageOutcome.STORY_FAILED
        record = pipeline.record(story_id)
        assert record.phase is GenerationPhase.FAILED
        assert record.failure_kind is FailureKind.CONTENT_GUIDELINES
        assert record.error_message.startswith("Page 2: ")
        assert pipeline.notifier.sent == []

    @pytest.mark.asyncio()
    async def test_out_of_range_index_is_dropped(self, pipeline, covered) -> None:
        story_id, page_payloads = await covered()
        payload = dict(page_payloads[0], page_index=9)

        assert await pipeline.page_worker.handle(payload) is None
        assert pipeline.record(story_id).images_generated == 0

    @pytest.mark.asyncio()
    async def test_missing_story_is_dropped(self, pipeline, covered) -> None:
        _, page_payloads = await covered()
        payload = dict(page_payloads[0], story_id="gone")

        assert await pipeline.page_worker.handle(payload) is None

    @pytest.mark.asyncio()
    async def test_notifier_error_does_not_fail_page(
        self, build_pipeline, make_request
    ) -> None:
        pipeline = build_pipeline(notifier=FailingNotifier())

        record = await pipeline.generate(make_request())

        assert record.phase is GenerationPhase.ALL_COMPLETE
        assert pipeline.queue.dead_letters == []


class TestMarkStoryFailed:
    @pytest.mark.asyncio()
    async def test_noop_once_complete(self, pipeline, make_request) -> None:
        record = await pipeline.generate(make_request())

        marked = await mark_story_failed(
            pipeline.store, record.id, ProviderModelError(PRIMARY, "late"), subject="Page 1"
        )

        assert marked is False
        after = pipeline.record(record.id)
        assert after.phase is GenerationPhase.ALL_COMPLETE
        assert after.error_message is None

    @pytest.mark.asyncio()
    async def test_first_failure_wins(self, pipeline, submit) -> None:
        story_id, _ = await submit()

        first = await mark_story_failed(
            pipeline.store, story_id, ProviderModelError(PRIMARY, "a"), subject="Page 1"
        )
        second = await mark_story_failed(
            pipeline.store, story_id, ProviderContentPolicyError(PRIMARY, "b"), subject="Page 3"
        )

        assert (first, second) == (True, False)
        record = pipeline.record(story_id)
        assert record.failure_kind is FailureKind.SERVICE_UNAVAILABLE
        assert record.error_message.startswith("Page 1: ")
