"""Image generation provider protocol and types.

Defines the ImageProvider protocol for image generation backends. Every
provider supports plain text-to-image generation; page illustrations also
need ``edit``, which conditions the output on a reference image so that
characters stay consistent with the cover.

Implementations:
    - OpenAIImageProvider (image_openai.py): gpt-image-1
    - GeminiImageProvider (image_gemini.py): gemini-2.5-flash-image-preview
    - PlaceholderImageProvider (image_placeholder.py): offline solid colors
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from storyloom.providers.base import (
    ProviderAuthError,
    ProviderConnectionError,
    ProviderContentPolicyError,
    ProviderEmptyResponseError,
    ProviderError,
    ProviderRateLimitError,
)


@dataclass(frozen=True)
class ImageResult:
    """Result of an image generation call.

    Attributes:
        image_data: Raw image bytes.
        content_type: MIME type (e.g., ``image/png``).
        provider_metadata: Provider-specific metadata (model, revised prompt, etc.).
    """

    image_data: bytes
    content_type: str = "image/png"
    provider_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        """Size of image data in bytes."""
        return len(self.image_data)

    @classmethod
    def from_base64(
        cls,
        b64_data: str,
        content_type: str = "image/png",
        **metadata: Any,
    ) -> ImageResult:
        """Create from base64-encoded image data."""
        return cls(
            image_data=base64.b64decode(b64_data),
            content_type=content_type,
            provider_metadata=metadata,
        )

    @classmethod
    def from_data_url(cls, data_url: str, **metadata: Any) -> ImageResult:
        """Create from a ``data:<mime>;base64,<payload>`` URL.

        Raises:
            ValueError: If the string is not a base64 data URL.
        """
        header, sep, payload = data_url.partition(",")
        if not sep or not header.startswith("data:") or ";base64" not in header:
            raise ValueError("Expected a base64 data URL")
        content_type = header[len("data:") :].split(";", 1)[0] or "image/png"
        return cls.from_base64(payload, content_type=content_type, **metadata)

    def to_base64(self) -> str:
        """Return the image bytes base64-encoded."""
        return base64.b64encode(self.image_data).decode("ascii")


@runtime_checkable
class ImageProvider(Protocol):
    """Protocol for image generation backends.

    The protocol is runtime-checkable for isinstance() validation.
    """

    @property
    def model(self) -> str:
        """Return the model identifier this provider calls."""
        ...

    async def generate(
        self,
        prompt: str,
        *,
        aspect_ratio: str = "1:1",
    ) -> ImageResult:
        """Generate an image from a text prompt.

        Raises:
            ImageProviderError: If generation fails.
        """
        ...

    async def edit(
        self,
        prompt: str,
        reference: ImageResult,
        *,
        aspect_ratio: str = "1:1",
    ) -> ImageResult:
        """Generate an image conditioned on a reference image.

        Raises:
            ImageProviderError: If generation fails.
        """
        ...


class ImageProviderError(ProviderError):
    """Base exception for image provider errors."""


class ImageContentPolicyError(ImageProviderError, ProviderContentPolicyError):
    """Raised when image generation is rejected by content policy."""


class ImageProviderConnectionError(ImageProviderError, ProviderConnectionError):
    """Raised when the image provider is unreachable."""


class ImageRateLimitError(ImageProviderError, ProviderRateLimitError):
    """Raised when the image provider throttles the caller."""


class ImageAuthError(ImageProviderError, ProviderAuthError):
    """Raised when the image provider rejects credentials or quota."""


class ImageEmptyResponseError(ImageProviderError, ProviderEmptyResponseError):
    """Raised when the image provider answered without image data."""
