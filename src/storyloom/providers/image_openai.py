"""OpenAI image generation provider.

Covers and plain illustrations go through ``images.generate``; page
illustrations go through ``images.edit`` with the cover attached as the
reference image so the model keeps characters consistent.

gpt-image-1 always answers with base64 payloads and accepts sizes
``1024x1024 / 1536x1024 / 1024x1536``.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, NoReturn

from storyloom.observability.logging import get_logger
from storyloom.providers.base import is_quota_exhausted, is_safety_rejection
from storyloom.providers.image import (
    ImageAuthError,
    ImageContentPolicyError,
    ImageEmptyResponseError,
    ImageProviderConnectionError,
    ImageProviderError,
    ImageRateLimitError,
    ImageResult,
)
from storyloom.providers.models import GPT_IMAGE_1

if TYPE_CHECKING:
    from openai import AsyncOpenAI

log = get_logger(__name__)

_ASPECT_RATIO_TO_SIZE: dict[str, str] = {
    "1:1": "1024x1024",
    "3:2": "1536x1024",
    "2:3": "1024x1536",
}

_REFERENCE_EXTENSIONS: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


class OpenAIImageProvider:
    """Image generation via OpenAI's Images API.

    Args:
        model: Model name (e.g., ``gpt-image-1``).
        api_key: OpenAI API key. Falls back to ``OPENAI_API_KEY`` env var.
        quality: Rendering quality passed to the API.
        client: Pre-built ``AsyncOpenAI`` client (for testing).
    """

    def __init__(
        self,
        model: str = GPT_IMAGE_1,
        api_key: str | None = None,
        quality: str = "medium",
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._quality = quality
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")

        if client is None and not self._api_key:
            raise ImageProviderError(
                "openai",
                "API key required. Set OPENAI_API_KEY environment variable.",
            )

        self._client: AsyncOpenAI = client or self._create_client()

    @property
    def model(self) -> str:
        return self._model

    def _create_client(self) -> AsyncOpenAI:
        """Create the AsyncOpenAI client (deferred import keeps startup light)."""
        from openai import AsyncOpenAI as _AsyncOpenAI

        return _AsyncOpenAI(api_key=self._api_key, max_retries=0)

    def _size_for(self, aspect_ratio: str) -> str:
        size = _ASPECT_RATIO_TO_SIZE.get(aspect_ratio)
        if size is None:
            supported = ", ".join(sorted(_ASPECT_RATIO_TO_SIZE))
            msg = f"Unsupported aspect_ratio '{aspect_ratio}'. Supported: {supported}"
            raise ImageProviderError("openai", msg)
        return size

    async def generate(
        self,
        prompt: str,
        *,
        aspect_ratio: str = "1:1",
    ) -> ImageResult:
        """Generate an image via ``images.generate``.

        Raises:
            ImageContentPolicyError: On safety-system rejection.
            ImageRateLimitError: On HTTP 429.
            ImageEmptyResponseError: When no image payload comes back.
            ImageProviderError: On any other API failure.
        """
        size = self._size_for(aspect_ratio)
        log.debug(
            "image_generate_start",
            model=self._model,
            size=size,
            prompt_length=len(prompt),
        )

        try:
            response = await self._client.images.generate(
                model=self._model,
                prompt=prompt,
                n=1,
                size=size,
                quality=self._quality,
                moderation="low",
            )
        except ImageProviderError:
            raise
        except Exception as e:
            self._handle_error(e)

        return self._to_result(response, size)

    async def edit(
        self,
        prompt: str,
        reference: ImageResult,
        *,
        aspect_ratio: str = "1:1",
    ) -> ImageResult:
        """Generate an image via ``images.edit`` using *reference* as input.

        The upload tuple is rebuilt on every call because the SDK consumes
        file payloads.
        """
        size = self._size_for(aspect_ratio)
        ext = _REFERENCE_EXTENSIONS.get(reference.content_type, "png")
        log.debug(
            "image_edit_start",
            model=self._model,
            size=size,
            prompt_length=len(prompt),
            reference_bytes=reference.size_bytes,
        )

        try:
            response = await self._client.images.edit(
                model=self._model,
                image=(f"reference.{ext}", reference.image_data, reference.content_type),
                prompt=prompt,
                n=1,
                size=size,
                quality=self._quality,
            )
        except ImageProviderError:
            raise
        except Exception as e:
            self._handle_error(e)

        return self._to_result(response, size)

    def _to_result(self, response: Any, size: str) -> ImageResult:
        if not response.data:
            raise ImageEmptyResponseError("openai", "Empty response from image API")

        image_item = response.data[0]
        b64_data = image_item.b64_json
        if not b64_data:
            raise ImageEmptyResponseError("openai", "No image data in response")

        metadata: dict[str, Any] = {"model": self._model, "size": size}
        revised_prompt = getattr(image_item, "revised_prompt", None)
        if revised_prompt:
            metadata["revised_prompt"] = revised_prompt

        log.info("image_generate_complete", model=self._model, size=size)
        return ImageResult.from_base64(b64_data, content_type="image/png", **metadata)

    def _handle_error(self, error: Exception) -> NoReturn:
        """Convert OpenAI exceptions to image provider exceptions."""
        from openai import APIConnectionError, APIStatusError

        if isinstance(error, APIConnectionError):
            raise ImageProviderConnectionError("openai", f"Connection error: {error}") from error

        if isinstance(error, APIStatusError):
            status = error.status_code
            message = str(error)
            if status == 429 and is_quota_exhausted(message, getattr(error, "code", None)):
                raise ImageAuthError("openai", f"Quota exhausted: {message}") from error
            if status == 429:
                raise ImageRateLimitError("openai", f"Rate limited: {message}") from error
            if status in (401, 403):
                raise ImageAuthError("openai", f"Not permitted (HTTP {status}): {message}") from error
            if is_safety_rejection(status, message):
                raise ImageContentPolicyError(
                    "openai", f"Content policy rejection: {message}"
                ) from error
            raise ImageProviderError("openai", f"API error (HTTP {status}): {message}") from error

        raise ImageProviderError("openai", f"Image generation failed: {error}") from error
