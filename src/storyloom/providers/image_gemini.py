"""Gemini image generation provider.

Talks to the Generative Language ``generateContent`` endpoint over httpx.
Reference images for page consistency are sent as ``inlineData`` parts
next to the text prompt.
"""

from __future__ import annotations

import os
from typing import Any

import httpx

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
from storyloom.providers.models import GEMINI_2_5_FLASH_IMAGE

log = get_logger(__name__)

_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Finish reasons that mean the safety system withheld the image.
_SAFETY_FINISH_REASONS = frozenset({"SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST"})


class GeminiImageProvider:
    """Image generation via Gemini's multimodal ``generateContent`` API.

    Args:
        model: Gemini image model name.
        api_key: API key. Falls back to ``GEMINI_API_KEY`` env var.
        base_url: Custom API base URL.
        timeout: Per-request timeout in seconds.
        client: Pre-built ``httpx.AsyncClient`` (for testing).
    """

    def __init__(
        self,
        model: str = GEMINI_2_5_FLASH_IMAGE,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not self._api_key:
            raise ImageProviderError(
                "gemini",
                "API key required. Set GEMINI_API_KEY environment variable.",
            )
        self._base_url = base_url or _BASE_URL
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={
                "x-goog-api-key": self._api_key,
                "Content-Type": "application/json",
            },
        )

    @property
    def model(self) -> str:
        return self._model

    async def generate(
        self,
        prompt: str,
        *,
        aspect_ratio: str = "1:1",
    ) -> ImageResult:
        """Generate an image from a text prompt."""
        parts: list[dict[str, Any]] = [{"text": prompt}]
        return await self._request(parts, aspect_ratio=aspect_ratio)

    async def edit(
        self,
        prompt: str,
        reference: ImageResult,
        *,
        aspect_ratio: str = "1:1",
    ) -> ImageResult:
        """Generate an image with *reference* supplied as inline data."""
        parts: list[dict[str, Any]] = [
            {"text": prompt},
            {
                "inlineData": {
                    "mimeType": reference.content_type,
                    "data": reference.to_base64(),
                }
            },
        ]
        return await self._request(parts, aspect_ratio=aspect_ratio)

    async def _request(self, parts: list[dict[str, Any]], *, aspect_ratio: str) -> ImageResult:
        url = f"{self._base_url}/models/{self._model}:generateContent"
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "temperature": 0.9,
                "imageConfig": {"aspectRatio": aspect_ratio},
            },
        }

        log.debug("image_generate_start", model=self._model, parts=len(parts))
        try:
            response = await self._client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise ImageProviderConnectionError("gemini", f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ImageProviderConnectionError("gemini", f"Failed to connect: {e}") from e

        self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as e:
            raise ImageProviderError("gemini", f"Invalid JSON response: {e}") from e

        return self._extract_image(data)

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status == 200:
            return
        text = response.text
        if status == 429 and is_quota_exhausted(text):
            raise ImageAuthError("gemini", f"Quota exhausted: {text}")
        if status == 429:
            raise ImageRateLimitError("gemini", "Rate limit exceeded")
        if status in (401, 403):
            raise ImageAuthError("gemini", f"Not permitted (HTTP {status}): {text}")
        if is_safety_rejection(status, text):
            raise ImageContentPolicyError("gemini", f"Content policy rejection: {text}")
        raise ImageProviderError("gemini", f"API error (HTTP {status}): {text}")

    def _extract_image(self, data: dict[str, Any]) -> ImageResult:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ImageContentPolicyError(
                "gemini", f"Prompt blocked by safety filter: {block_reason}"
            )

        candidates = data.get("candidates") or []
        if not candidates:
            raise ImageEmptyResponseError("gemini", "No candidates in Gemini image response")

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        if finish_reason in _SAFETY_FINISH_REASONS:
            raise ImageContentPolicyError(
                "gemini", f"Image withheld by safety filter: {finish_reason}"
            )

        content_parts = (candidate.get("content") or {}).get("parts") or []
        for part in content_parts:
            inline = part.get("inlineData")
            if inline and inline.get("data"):
                log.info("image_generate_complete", model=self._model)
                return ImageResult.from_base64(
                    inline["data"],
                    content_type=inline.get("mimeType", "image/png"),
                    model=self._model,
                )

        raise ImageEmptyResponseError("gemini", "No image data in Gemini response")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
