"""Cover and page workers.

Workers are queue consumers: each handles one job payload and never talks
to another worker directly. The only shared state is the story document,
and every write to it goes through ``run_transaction`` so that concurrent
page workers converge on the correct counter and phase.

Policies enforced here:
- ``failed`` is sticky. A page write that finds the story failed is a
  no-op, and a failure mark on a finished story is a no-op.
- Completion is decided inside the page transaction from the
  post-increment counter, after the already-done slot check, so a
  duplicate delivery can neither double-count nor re-notify.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from storyloom.messaging import PAGE_TOPIC, MessageQueue
from storyloom.models.jobs import ConsistencyReference, CoverGenerationJob, PageGenerationJob
from storyloom.models.story import GenerationPhase, StoryRecord
from storyloom.observability.logging import get_logger, job_context
from storyloom.pipeline.assets import CoverAssetGenerator, GeneratedAsset, PageAssetGenerator
from storyloom.pipeline.errors import ExhaustedError, describe_failure
from storyloom.pipeline.notifier import CompletionNotifier
from storyloom.providers.image import ImageResult
from storyloom.storage.blobs import BlobStorage, content_type_for
from storyloom.storage.documents import Transaction, TransactionalStore

log = get_logger(__name__)


class PageOutcome(StrEnum):
    """Result of the page convergence transaction."""

    COMMITTED = "committed"
    COMPLETED = "completed"  # this write finished the story
    REDUNDANT = "redundant"  # slot already filled
    STORY_FAILED = "story_failed"


async def mark_story_failed(
    store: TransactionalStore,
    story_id: str,
    error: BaseException,
    *,
    subject: str,
) -> bool:
    """Move a story to ``failed`` with a user-facing diagnostic.

    Returns:
        True if this call marked the story, False if it was already terminal.
    """
    kind, message = describe_failure(error, subject=subject)

    def apply(txn: Transaction) -> GenerationPhase | None:
        record = StoryRecord.from_document(txn.require(story_id))
        if record.phase.is_terminal:
            return record.phase
        record.failure_kind = kind
        record.error_message = message
        record.advance(GenerationPhase.FAILED)
        txn.set(story_id, record.to_document())
        return None

    previous = await store.run_transaction(apply)
    if previous is not None:
        log.info("story_failure_ignored", story_id=story_id, phase=str(previous), subject=subject)
        return False

    attempts = error.attempts if isinstance(error, ExhaustedError) else []
    log.error(
        "story_marked_failed",
        story_id=story_id,
        subject=subject,
        failure_kind=str(kind),
        attempts=[f"{a.model}/{a.style_index}:{a.error_class}" for a in attempts],
        error=str(error),
    )
    return True


class CoverWorker:
    """Consume a cover job: illustrate the cover, then fan out page jobs."""

    def __init__(
        self,
        store: TransactionalStore,
        queue: MessageQueue,
        generator: CoverAssetGenerator,
        blobs: BlobStorage,
    ) -> None:
        self.store = store
        self.queue = queue
        self.generator = generator
        self.blobs = blobs

    async def handle(self, payload: dict[str, Any]) -> None:
        job = CoverGenerationJob.model_validate(payload)
        with job_context(job.story_id, "cover"):
            await self._run(job)

    async def _run(self, job: CoverGenerationJob) -> None:
        snapshot = self.store.get(job.story_id)
        if snapshot is None:
            log.warning("story_record_missing")
            return
        record = StoryRecord.from_document(snapshot)

        if record.phase.is_terminal:
            log.info("cover_job_skipped", phase=str(record.phase))
            return
        if record.phase is GenerationPhase.COVER_COMPLETE and record.cover_image_url:
            # Redelivery after a committed cover: page workers absorb duplicates.
            log.info("cover_job_redelivered")
            image = ImageResult(
                image_data=await self.blobs.read(record.cover_image_url),
                content_type=content_type_for(record.cover_image_url),
            )
            await self._publish_pages(job, image, record.cover_image_url)
            return

        try:
            asset = await self.generator.generate(job)
        except ExhaustedError as e:
            await mark_story_failed(self.store, job.story_id, e, subject="Cover")
            return

        phase = await self.store.run_transaction(lambda txn: self._commit_cover(txn, job, asset))
        if phase is not GenerationPhase.COVER_COMPLETE:
            log.info("cover_commit_skipped", phase=str(phase))
            return

        log.info(
            "cover_image_committed",
            model=asset.provenance.model,
            style_index=asset.provenance.style_index,
        )
        await self._publish_pages(job, asset.image, asset.storage_ref)

    @staticmethod
    def _commit_cover(
        txn: Transaction, job: CoverGenerationJob, asset: GeneratedAsset
    ) -> GenerationPhase:
        record = StoryRecord.from_document(txn.require(job.story_id))
        if record.phase is not GenerationPhase.TEXT_COMPLETE:
            return record.phase
        record.cover_image_url = asset.storage_ref
        record.metadata.cover = asset.provenance
        record.advance(GenerationPhase.COVER_COMPLETE)
        txn.set(job.story_id, record.to_document())
        return GenerationPhase.COVER_COMPLETE

    async def _publish_pages(
        self, job: CoverGenerationJob, cover: ImageResult, storage_ref: str
    ) -> None:
        reference = ConsistencyReference.from_image(
            cover, caption=job.cover_prompt, storage_ref=storage_ref
        )
        for index, image_prompt in enumerate(job.page_prompts):
            page_job = PageGenerationJob(
                story_id=job.story_id,
                owner_id=job.owner_id,
                model=job.page_model,
                art_styles=job.art_styles,
                character_descriptions=job.character_descriptions,
                page_index=index,
                image_prompt=image_prompt,
                consistency=reference,
            )
            await self.queue.publish(PAGE_TOPIC, page_job.to_payload())
        log.info("page_jobs_published", count=len(job.page_prompts))


class PageWorker:
    """Consume one page job and converge it into the story record."""

    def __init__(
        self,
        store: TransactionalStore,
        generator: PageAssetGenerator,
        notifier: CompletionNotifier,
    ) -> None:
        self.store = store
        self.generator = generator
        self.notifier = notifier

    async def handle(self, payload: dict[str, Any]) -> PageOutcome | None:
        job = PageGenerationJob.model_validate(payload)
        with job_context(job.story_id, "page", page_index=job.page_index):
            return await self._run(job)

    async def _run(self, job: PageGenerationJob) -> PageOutcome | None:
        snapshot = self.store.get(job.story_id)
        if snapshot is None:
            log.warning("story_record_missing")
            return None
        record = StoryRecord.from_document(snapshot)

        try:
            page = record.page(job.page_index)
        except IndexError:
            log.error("page_index_out_of_range", pages=len(record.pages))
            return None
        if record.phase is GenerationPhase.FAILED:
            log.info("page_job_skipped")
            return PageOutcome.STORY_FAILED
        if page.is_done:
            log.info("page_write_redundant")
            return PageOutcome.REDUNDANT

        try:
            asset = await self.generator.generate(job)
        except ExhaustedError as e:
            await mark_story_failed(
                self.store, job.story_id, e, subject=f"Page {job.page_index + 1}"
            )
            return PageOutcome.STORY_FAILED

        outcome = await self.store.run_transaction(
            lambda txn: self.converge(txn, job.story_id, job.page_index, asset)
        )

        if outcome is PageOutcome.REDUNDANT:
            log.info("page_write_redundant")
        elif outcome is PageOutcome.STORY_FAILED:
            log.info("page_write_discarded")
        else:
            log.info(
                "page_image_committed",
                model=asset.provenance.model,
                style_index=asset.provenance.style_index,
            )
        if outcome is PageOutcome.COMPLETED:
            log.info("story_all_complete")
            await self._notify(job.owner_id, job.story_id)
        return outcome

    @staticmethod
    def converge(
        txn: Transaction, story_id: str, page_index: int, asset: GeneratedAsset
    ) -> PageOutcome:
        """Write one page image into the record inside a transaction."""
        record = StoryRecord.from_document(txn.require(story_id))
        if record.phase is GenerationPhase.FAILED:
            return PageOutcome.STORY_FAILED
        page = record.page(page_index)
        if page.is_done or record.phase is GenerationPhase.ALL_COMPLETE:
            return PageOutcome.REDUNDANT

        page.image_url = asset.storage_ref
        record.images_generated += 1
        record.metadata.pages[str(page_index)] = asset.provenance
        if record.images_generated == record.total_images:
            record.advance(GenerationPhase.ALL_COMPLETE)
            outcome = PageOutcome.COMPLETED
        else:
            record.touch()
            outcome = PageOutcome.COMMITTED
        txn.set(story_id, record.to_document())
        return outcome

    async def _notify(self, owner_id: str, story_id: str) -> None:
        snapshot = self.store.get(story_id)
        title = snapshot.get("title", "") if snapshot else ""
        try:
            await self.notifier.notify(owner_id, story_id, title)
        except Exception as e:
            log.warning("notification_failed", story_id=story_id, error=str(e))
