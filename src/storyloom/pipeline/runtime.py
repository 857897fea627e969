"""Wiring of stores, queue, providers and workers into one pipeline."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from storyloom.messaging import COVER_TOPIC, PAGE_TOPIC, InMemoryMessageQueue
from storyloom.models.request import GenerationRequest
from storyloom.models.story import StoryRecord
from storyloom.pipeline.assets import (
    CoverAssetGenerator,
    ImageProviderFactory,
    ImageProviderPool,
    PageAssetGenerator,
)
from storyloom.pipeline.config import PipelineConfig
from storyloom.pipeline.fallback import FallbackResolver
from storyloom.pipeline.notifier import CompletionNotifier, LoggingNotifier
from storyloom.pipeline.orchestrator import Orchestrator, TextProviderFactory
from storyloom.pipeline.retry import RetryExecutor
from storyloom.pipeline.workers import CoverWorker, PageWorker
from storyloom.providers.image_factory import create_image_provider
from storyloom.providers.text import create_text_provider
from storyloom.storage.blobs import BlobStorage, LocalBlobStorage
from storyloom.storage.documents import (
    DocumentNotFoundError,
    SqliteDocumentStore,
    TransactionalStore,
)
from storyloom.storage.profiles import InMemoryProfileDirectory, ProfileDirectory


class StoryPipeline:
    """Orchestrator plus cover and page workers bound to one message queue.

    Args:
        store: Story document store.
        queue: In-memory queue the workers subscribe to.
        blobs: Image blob storage.
        profiles: Character profile lookup.
        notifier: Completion notifier; defaults to logging only.
        config: Pipeline configuration.
        text_provider_factory: Builds text providers by model name.
        image_provider_factory: Builds image providers by model name.
        sleep: Backoff sleep function.
    """

    def __init__(
        self,
        *,
        store: TransactionalStore,
        queue: InMemoryMessageQueue,
        blobs: BlobStorage,
        profiles: ProfileDirectory | None = None,
        notifier: CompletionNotifier | None = None,
        config: PipelineConfig | None = None,
        text_provider_factory: TextProviderFactory = create_text_provider,
        image_provider_factory: ImageProviderFactory = create_image_provider,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or PipelineConfig()
        self.store = store
        self.queue = queue
        self.blobs = blobs
        self.notifier = notifier or LoggingNotifier()

        retry = RetryExecutor(
            self.config.retry.max_attempts, self.config.retry.base_delay, sleep=sleep
        )
        resolver = FallbackResolver(retry)
        self.image_providers = ImageProviderPool(image_provider_factory)

        self.orchestrator = Orchestrator(
            store,
            queue,
            profiles or InMemoryProfileDirectory(),
            resolver,
            text_provider_factory,
            text_timeout=self.config.timeouts.text,
            temperature=self.config.temperature,
            thinking_budget=self.config.thinking_budget,
        )
        self.cover_worker = CoverWorker(
            store,
            queue,
            CoverAssetGenerator(resolver, blobs, self.image_providers, self.config.timeouts.cover),
            blobs,
        )
        self.page_worker = PageWorker(
            store,
            PageAssetGenerator(resolver, blobs, self.image_providers, self.config.timeouts.page),
            self.notifier,
        )
        queue.subscribe(COVER_TOPIC, self.cover_worker.handle)
        queue.subscribe(PAGE_TOPIC, self.page_worker.handle)

    @classmethod
    def local(
        cls,
        config: PipelineConfig,
        *,
        profiles: ProfileDirectory | None = None,
        notifier: CompletionNotifier | None = None,
    ) -> StoryPipeline:
        """Build a pipeline persisting to ``config.data_dir``."""
        return cls(
            store=SqliteDocumentStore(config.database_path, max_attempts=config.conflict_retries),
            queue=InMemoryMessageQueue(),
            blobs=LocalBlobStorage(config.blobs_path),
            profiles=profiles,
            notifier=notifier,
            config=config,
        )

    async def submit(self, request: GenerationRequest) -> str:
        """Run the orchestrator; workers run on the next ``run_until_idle``."""
        return await self.orchestrator.generate(request)

    async def run_until_idle(self) -> int:
        return await self.queue.run_until_idle()

    async def generate(self, request: GenerationRequest) -> StoryRecord:
        """Submit *request* and drain the queue, returning the final record."""
        story_id = await self.submit(request)
        await self.run_until_idle()
        return self.record(story_id)

    def record(self, story_id: str) -> StoryRecord:
        """Current state of a story.

        Raises:
            DocumentNotFoundError: If no such story exists.
        """
        data = self.store.get(story_id)
        if data is None:
            raise DocumentNotFoundError(story_id)
        return StoryRecord.from_document(data)

    async def aclose(self) -> None:
        await self.image_providers.aclose()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()
