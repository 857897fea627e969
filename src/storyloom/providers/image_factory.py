"""Image provider factory.

Creates image provider instances from catalog model identifiers. Provider
implementations are lazily imported so optional SDKs load only when used.
"""

from __future__ import annotations

from typing import Any

from storyloom.providers.image import ImageProvider, ImageProviderError
from storyloom.providers.models import PLACEHOLDER_IMAGE


def create_image_provider(model: str, **kwargs: Any) -> ImageProvider:
    """Create an image provider for a catalog model.

    Args:
        model: Model identifier (``gpt-image-1``,
            ``gemini-2.5-flash-image-preview`` or ``placeholder``).
        **kwargs: Provider options forwarded to the constructor.

    Returns:
        Configured image provider.

    Raises:
        ImageProviderError: If the model is unknown.
    """
    normalized = model.strip().lower()

    if normalized == PLACEHOLDER_IMAGE:
        from storyloom.providers.image_placeholder import PlaceholderImageProvider

        return PlaceholderImageProvider()

    if normalized.startswith("gpt-image"):
        from storyloom.providers.image_openai import OpenAIImageProvider

        return OpenAIImageProvider(model=normalized, **kwargs)

    if normalized.startswith("gemini"):
        from storyloom.providers.image_gemini import GeminiImageProvider

        return GeminiImageProvider(model=normalized, **kwargs)

    raise ImageProviderError(normalized, f"Unknown image model: {model}")
