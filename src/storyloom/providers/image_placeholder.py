"""Placeholder image provider for development and CI.

Generates minimal solid-color PNGs with no external dependencies.
Zero cost, instant generation.
"""

from __future__ import annotations

import hashlib
import struct
import zlib

from storyloom.providers.image import ImageResult
from storyloom.providers.models import PLACEHOLDER_IMAGE

_ASPECT_RATIO_TO_SIZE: dict[str, tuple[int, int]] = {
    "1:1": (256, 256),
    "3:2": (384, 256),
    "2:3": (256, 384),
}

_PALETTE: list[tuple[int, int, int]] = [
    (88, 101, 130),  # slate blue
    (130, 88, 101),  # dusty rose
    (101, 130, 88),  # sage green
    (130, 118, 88),  # warm sand
    (88, 130, 125),  # teal
    (118, 88, 130),  # muted purple
]


def _make_png(width: int, height: int, r: int, g: int, b: int) -> bytes:
    """Generate a minimal solid-color RGB PNG in pure Python."""

    def _chunk(chunk_type: bytes, data: bytes) -> bytes:
        payload = chunk_type + data
        crc = struct.pack(">I", zlib.crc32(payload) & 0xFFFFFFFF)
        return struct.pack(">I", len(data)) + payload + crc

    sig = b"\x89PNG\r\n\x1a\n"
    ihdr = _chunk(b"IHDR", struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0))
    row = bytes([0]) + bytes([r, g, b]) * width
    idat = _chunk(b"IDAT", zlib.compress(row * height))
    iend = _chunk(b"IEND", b"")
    return sig + ihdr + idat + iend


def _color_for(text: str) -> tuple[int, int, int]:
    idx = int(hashlib.md5(text.encode()).hexdigest(), 16) % len(_PALETTE)
    return _PALETTE[idx]


class PlaceholderImageProvider:
    """Zero-cost image provider that generates solid-color PNGs.

    The color is chosen deterministically from the prompt hash. ``edit``
    mixes in the reference digest so a page differs from its cover.
    """

    @property
    def model(self) -> str:
        return PLACEHOLDER_IMAGE

    async def generate(
        self,
        prompt: str,
        *,
        aspect_ratio: str = "1:1",
    ) -> ImageResult:
        return self._render(prompt, aspect_ratio)

    async def edit(
        self,
        prompt: str,
        reference: ImageResult,
        *,
        aspect_ratio: str = "1:1",
    ) -> ImageResult:
        digest = hashlib.sha256(reference.image_data).hexdigest()[:8]
        return self._render(f"{digest}:{prompt}", aspect_ratio)

    def _render(self, seed: str, aspect_ratio: str) -> ImageResult:
        width, height = _ASPECT_RATIO_TO_SIZE.get(aspect_ratio, _ASPECT_RATIO_TO_SIZE["1:1"])
        r, g, b = _color_for(seed)
        return ImageResult(
            image_data=_make_png(width, height, r, g, b),
            content_type="image/png",
            provider_metadata={
                "model": PLACEHOLDER_IMAGE,
                "size": f"{width}x{height}",
                "color": f"#{r:02x}{g:02x}{b:02x}",
                "prompt_preview": seed[:80],
            },
        )
