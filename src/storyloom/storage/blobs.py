"""Blob storage for generated images.

Assets live under a deterministic path keyed by owner, story and asset
name (``stories/{owner}/{story}/{asset}.png``). The generators put a
content digest in the asset name, so identical bytes land on one object.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Protocol, runtime_checkable

from storyloom.observability.logging import get_logger

log = get_logger(__name__)

# Extension mapping from MIME content types
_CONTENT_TYPE_TO_EXT: dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9_.-]+$")


def asset_path(owner_id: str, story_id: str, asset_name: str, content_type: str = "image/png") -> str:
    """Build the storage reference for one asset.

    Raises:
        ValueError: If any segment could escape its directory.
    """
    for segment in (owner_id, story_id, asset_name):
        if not _SAFE_SEGMENT.match(segment) or segment in (".", ".."):
            raise ValueError(f"Unsafe storage path segment: {segment!r}")
    ext = _CONTENT_TYPE_TO_EXT.get(content_type, ".png")
    return f"stories/{owner_id}/{story_id}/{asset_name}{ext}"


def content_type_for(storage_ref: str) -> str:
    """MIME type implied by a storage reference's extension."""
    suffix = Path(storage_ref).suffix.lower()
    if suffix == ".jpeg":
        return "image/jpeg"
    for content_type, ext in _CONTENT_TYPE_TO_EXT.items():
        if ext == suffix:
            return content_type
    return "image/png"


@runtime_checkable
class BlobStorage(Protocol):
    """Private-by-default object storage for story assets."""

    async def upload(
        self,
        owner_id: str,
        story_id: str,
        asset_name: str,
        data: bytes,
        *,
        content_type: str = "image/png",
    ) -> str:
        """Store *data* and return its storage reference."""
        ...

    async def read(self, storage_ref: str) -> bytes:
        """Read back a previously uploaded asset."""
        ...


class LocalBlobStorage:
    """Store assets as files under ``{root}/stories/...``.

    Args:
        root: Directory all storage references are relative to.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    async def upload(
        self,
        owner_id: str,
        story_id: str,
        asset_name: str,
        data: bytes,
        *,
        content_type: str = "image/png",
    ) -> str:
        ref = asset_path(owner_id, story_id, asset_name, content_type)
        path = self.root / ref
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so readers never see a partial file
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        log.debug("asset_stored", ref=ref, size_bytes=len(data))
        return ref

    async def read(self, storage_ref: str) -> bytes:
        path = (self.root / storage_ref).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Storage reference escapes root: {storage_ref!r}")
        return path.read_bytes()


class InMemoryBlobStorage:
    """Dict-backed blob storage for tests."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def upload(
        self,
        owner_id: str,
        story_id: str,
        asset_name: str,
        data: bytes,
        *,
        content_type: str = "image/png",
    ) -> str:
        ref = asset_path(owner_id, story_id, asset_name, content_type)
        self.objects[ref] = data
        return ref

    async def read(self, storage_ref: str) -> bytes:
        try:
            return self.objects[storage_ref]
        except KeyError:
            raise FileNotFoundError(storage_ref) from None
