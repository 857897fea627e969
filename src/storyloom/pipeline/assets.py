"""Cover and page asset generators.

Each generator drives the fallback resolver over the job's model chain
and art styles, then uploads the winning image. The upload happens only
after the resolver succeeds, so a failed search never leaves a partial
asset behind. Objects are named by asset and content digest, so bytes
behind a committed URL are never replaced.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from storyloom.models.jobs import CoverGenerationJob, PageGenerationJob
from storyloom.models.story import AssetProvenance
from storyloom.observability.logging import get_logger
from storyloom.pipeline.fallback import FallbackResolver, FallbackResult
from storyloom.pipeline.prompts import (
    COVER_ASPECT_RATIO,
    PAGE_ASPECT_RATIO,
    build_cover_prompt,
    build_page_prompt,
)
from storyloom.providers.image import ImageProvider, ImageResult
from storyloom.providers.image_factory import create_image_provider
from storyloom.providers.models import image_model_chain
from storyloom.storage.blobs import BlobStorage

log = get_logger(__name__)

DEFAULT_COVER_TIMEOUT = 300.0
DEFAULT_PAGE_TIMEOUT = 240.0

ImageProviderFactory = Callable[[str], ImageProvider]


@dataclass(frozen=True)
class GeneratedAsset:
    """An uploaded image and where it came from."""

    storage_ref: str
    image: ImageResult
    provenance: AssetProvenance


class ImageProviderPool:
    """Create image providers on first use and reuse them per model."""

    def __init__(self, factory: ImageProviderFactory = create_image_provider) -> None:
        self._factory = factory
        self._providers: dict[str, ImageProvider] = {}

    def get(self, model: str) -> ImageProvider:
        provider = self._providers.get(model)
        if provider is None:
            provider = self._factory(model)
            self._providers[model] = provider
        return provider

    async def aclose(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
        self._providers.clear()


class _AssetGenerator:
    def __init__(
        self,
        resolver: FallbackResolver,
        blobs: BlobStorage,
        providers: ImageProviderPool,
        timeout: float,
    ) -> None:
        self.resolver = resolver
        self.blobs = blobs
        self.providers = providers
        self.timeout = timeout

    async def _call(
        self,
        request: Callable[[ImageProvider], Awaitable[ImageResult]],
        model: str,
    ) -> ImageResult:
        provider = self.providers.get(model)
        return await asyncio.wait_for(request(provider), timeout=self.timeout)

    async def _upload(
        self,
        *,
        owner_id: str,
        story_id: str,
        asset_name: str,
        requested_model: str,
        result: FallbackResult[tuple[ImageResult, str]],
    ) -> GeneratedAsset:
        image, prompt = result.asset
        # A concurrent duplicate that drew a different image gets its own object.
        digest = hashlib.sha256(image.image_data).hexdigest()[:12]
        storage_ref = await self.blobs.upload(
            owner_id,
            story_id,
            f"{asset_name}-{digest}",
            image.image_data,
            content_type=image.content_type,
        )
        provenance = AssetProvenance(
            requested_model=requested_model,
            model=result.model,
            model_index=result.model_index,
            style_index=result.style_index,
            prompt=prompt,
            attempts=result.attempts,
        )
        log.info(
            "asset_uploaded",
            story_id=story_id,
            asset=asset_name,
            model=result.model,
            style_index=result.style_index,
            size_bytes=image.size_bytes,
        )
        return GeneratedAsset(storage_ref=storage_ref, image=image, provenance=provenance)


class CoverAssetGenerator(_AssetGenerator):
    """Generate and upload a story's cover illustration."""

    def __init__(
        self,
        resolver: FallbackResolver,
        blobs: BlobStorage,
        providers: ImageProviderPool | None = None,
        timeout: float = DEFAULT_COVER_TIMEOUT,
    ) -> None:
        super().__init__(resolver, blobs, providers or ImageProviderPool(), timeout)

    async def generate(self, job: CoverGenerationJob) -> GeneratedAsset:
        """Produce the cover for *job*.

        Raises:
            ExhaustedError: If every model and style failed.
        """

        async def attempt(model: str, style: str | None) -> tuple[ImageResult, str]:
            prompt = build_cover_prompt(
                title=job.title,
                cover_prompt=job.cover_prompt,
                style=style or "",
                character_descriptions=job.character_descriptions,
            )
            image = await self._call(
                lambda provider: provider.generate(prompt, aspect_ratio=COVER_ASPECT_RATIO),
                model,
            )
            return image, prompt

        result = await self.resolver.resolve(
            image_model_chain(job.model),
            list(job.art_styles),
            attempt,
            asset="cover",
        )
        return await self._upload(
            owner_id=job.owner_id,
            story_id=job.story_id,
            asset_name="cover",
            requested_model=job.model,
            result=result,
        )


class PageAssetGenerator(_AssetGenerator):
    """Generate and upload one page illustration, conditioned on the cover."""

    def __init__(
        self,
        resolver: FallbackResolver,
        blobs: BlobStorage,
        providers: ImageProviderPool | None = None,
        timeout: float = DEFAULT_PAGE_TIMEOUT,
    ) -> None:
        super().__init__(resolver, blobs, providers or ImageProviderPool(), timeout)

    async def generate(self, job: PageGenerationJob) -> GeneratedAsset:
        """Produce the illustration for ``job.page_index``.

        Raises:
            ExhaustedError: If every model and style failed.
        """
        reference = job.consistency.to_image()

        async def attempt(model: str, style: str | None) -> tuple[ImageResult, str]:
            prompt = build_page_prompt(
                image_prompt=job.image_prompt,
                style=style or "",
                character_descriptions=job.character_descriptions,
            )
            image = await self._call(
                lambda provider: provider.edit(prompt, reference, aspect_ratio=PAGE_ASPECT_RATIO),
                model,
            )
            return image, prompt

        result = await self.resolver.resolve(
            image_model_chain(job.model),
            list(job.art_styles),
            attempt,
            asset=f"page-{job.page_index}",
        )
        return await self._upload(
            owner_id=job.owner_id,
            story_id=job.story_id,
            asset_name=f"page-{job.page_index}",
            requested_model=job.model,
            result=result,
        )
