"""Text and image provider integrations."""

from storyloom.providers.base import (
    ProviderAuthError,
    ProviderConnectionError,
    ProviderContentPolicyError,
    ProviderEmptyResponseError,
    ProviderError,
    ProviderMalformedResponseError,
    ProviderModelError,
    ProviderRateLimitError,
    TextProvider,
)
from storyloom.providers.image import (
    ImageAuthError,
    ImageContentPolicyError,
    ImageEmptyResponseError,
    ImageProvider,
    ImageProviderConnectionError,
    ImageProviderError,
    ImageRateLimitError,
    ImageResult,
)
from storyloom.providers.image_factory import create_image_provider
from storyloom.providers.text import ChatModelTextProvider, create_text_provider

__all__ = [
    "ChatModelTextProvider",
    "ImageAuthError",
    "ImageContentPolicyError",
    "ImageEmptyResponseError",
    "ImageProvider",
    "ImageProviderConnectionError",
    "ImageProviderError",
    "ImageRateLimitError",
    "ImageResult",
    "ProviderAuthError",
    "ProviderConnectionError",
    "ProviderContentPolicyError",
    "ProviderEmptyResponseError",
    "ProviderError",
    "ProviderMalformedResponseError",
    "ProviderModelError",
    "ProviderRateLimitError",
    "TextProvider",
    "create_image_provider",
    "create_text_provider",
]
