"""Model catalog: known model identifiers, defaults and fallback pairs."""

from __future__ import annotations

from typing import Final

GPT_4O: Final = "gpt-4o"
GEMINI_2_5_PRO: Final = "gemini-2.5-pro"

GPT_IMAGE_1: Final = "gpt-image-1"
GEMINI_2_5_FLASH_IMAGE: Final = "gemini-2.5-flash-image-preview"
PLACEHOLDER_IMAGE: Final = "placeholder"

TEXT_MODELS: Final = frozenset({GPT_4O, GEMINI_2_5_PRO})
IMAGE_MODELS: Final = frozenset({GPT_IMAGE_1, GEMINI_2_5_FLASH_IMAGE, PLACEHOLDER_IMAGE})

DEFAULT_TEXT_MODEL: Final = GEMINI_2_5_PRO
DEFAULT_COVER_MODEL: Final = GPT_IMAGE_1
DEFAULT_PAGE_MODEL: Final = GPT_IMAGE_1

# Each real model falls back to the other of its kind.
TEXT_FALLBACKS: Final[dict[str, str]] = {
    GPT_4O: GEMINI_2_5_PRO,
    GEMINI_2_5_PRO: GPT_4O,
}
IMAGE_FALLBACKS: Final[dict[str, str]] = {
    GPT_IMAGE_1: GEMINI_2_5_FLASH_IMAGE,
    GEMINI_2_5_FLASH_IMAGE: GPT_IMAGE_1,
}


def text_model_chain(primary: str) -> list[str]:
    """Return ``[primary]`` plus its fallback text model, if any."""
    fallback = TEXT_FALLBACKS.get(primary)
    return [primary, fallback] if fallback else [primary]


def image_model_chain(primary: str) -> list[str]:
    """Return ``[primary]`` plus its fallback image model, if any."""
    fallback = IMAGE_FALLBACKS.get(primary)
    return [primary, fallback] if fallback else [primary]
