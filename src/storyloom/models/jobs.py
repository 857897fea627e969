"""Generation job messages.

Jobs are immutable, write-once messages. They travel through the message
queue as JSON, so binary payloads (the cover consistency reference) are
carried base64-encoded.
"""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from storyloom.providers.image import ImageResult

NonEmptyStr = Annotated[str, StringConstraints(min_length=1)]


class _Job(BaseModel):
    model_config = ConfigDict(frozen=True)

    story_id: NonEmptyStr
    owner_id: NonEmptyStr
    model: NonEmptyStr = Field(description="Requested (primary) image model")
    art_styles: tuple[NonEmptyStr, ...] = Field(min_length=1, max_length=3)
    character_descriptions: str = ""

    def to_payload(self) -> dict[str, object]:
        return self.model_dump(mode="json")


class CoverGenerationJob(_Job):
    """Request to illustrate a story's cover, then fan out its pages."""

    title: NonEmptyStr
    cover_prompt: NonEmptyStr
    page_prompts: tuple[str, ...] = Field(min_length=1)
    page_model: NonEmptyStr


class ConsistencyReference(BaseModel):
    """The generated cover, handed to page jobs for visual consistency."""

    model_config = ConfigDict(frozen=True)

    image_b64: NonEmptyStr
    content_type: str = "image/png"
    caption: str = Field(default="", description="Text prompt the cover was drawn from")
    storage_ref: str = ""

    @classmethod
    def from_image(cls, image: ImageResult, *, caption: str, storage_ref: str) -> ConsistencyReference:
        return cls(
            image_b64=image.to_base64(),
            content_type=image.content_type,
            caption=caption,
            storage_ref=storage_ref,
        )

    def to_image(self) -> ImageResult:
        return ImageResult.from_base64(self.image_b64, content_type=self.content_type)


class PageGenerationJob(_Job):
    """Request to illustrate one page of a story."""

    page_index: int = Field(ge=0)
    image_prompt: NonEmptyStr
    consistency: ConsistencyReference
