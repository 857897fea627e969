"""Story record models.

``StoryRecord`` is the single shared document every worker mutates. It is
persisted as a plain JSON dict (``to_document`` / ``from_document``) so
that any transactional document store can hold it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class GenerationPhase(StrEnum):
    """Lifecycle phase of a story record."""

    TEXT_COMPLETE = "text_complete"
    COVER_COMPLETE = "cover_complete"
    ALL_COMPLETE = "all_complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationPhase.ALL_COMPLETE, GenerationPhase.FAILED)

    def can_transition_to(self, target: GenerationPhase) -> bool:
        """Phases only move forward; FAILED is reachable from any non-terminal phase."""
        if self.is_terminal:
            return False
        if target is GenerationPhase.FAILED:
            return True
        return _PHASE_ORDER.index(target) > _PHASE_ORDER.index(self)


_PHASE_ORDER = [
    GenerationPhase.TEXT_COMPLETE,
    GenerationPhase.COVER_COMPLETE,
    GenerationPhase.ALL_COMPLETE,
]


class FailureKind(StrEnum):
    """User-facing failure category."""

    CONTENT_GUIDELINES = "content_guidelines"  # rephrase and try again
    SERVICE_UNAVAILABLE = "service_unavailable"  # retry later
    NOT_PERMITTED = "not_permitted"  # permission or quota, not user-actionable


class StoryPage(BaseModel):
    """One page of the story; ``image_url`` stays empty until generated."""

    index: int = Field(ge=0)
    text: str
    image_url: str = ""

    @property
    def is_done(self) -> bool:
        return bool(self.image_url)


class AssetProvenance(BaseModel):
    """Which model and style actually produced an asset."""

    requested_model: str
    model: str
    model_index: int = Field(ge=0)
    style_index: int = Field(ge=0)
    prompt: str = ""
    attempts: int = Field(default=1, ge=1)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def used_fallback(self) -> bool:
        return self.model_index > 0 or self.style_index > 0


class GenerationMetadata(BaseModel):
    """Audit trail of models, prompts and fallbacks used for a story."""

    text_model: str = ""
    requested_text_model: str = ""
    cover_prompt: str = ""
    art_styles: list[str] = Field(default_factory=list)
    character_descriptions: str = ""
    age_range: tuple[int, int] | None = None
    cover: AssetProvenance | None = None
    pages: dict[str, AssetProvenance] = Field(
        default_factory=dict, description="Keyed by page index as a string"
    )

    @property
    def text_model_fallback(self) -> bool:
        return bool(self.requested_text_model) and self.text_model != self.requested_text_model


class StoryRecord(BaseModel):
    """The shared, polled state of one generated story."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    owner_id: str
    title: str
    pages: list[StoryPage]
    cover_image_url: str | None = None
    phase: GenerationPhase = GenerationPhase.TEXT_COMPLETE
    images_generated: int = Field(default=0, ge=0)
    total_images: int = Field(ge=0)
    metadata: GenerationMetadata = Field(default_factory=GenerationMetadata)
    failure_kind: FailureKind | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _counter_within_total(self) -> StoryRecord:
        if self.images_generated > self.total_images:
            raise ValueError(
                f"images_generated ({self.images_generated}) exceeds "
                f"total_images ({self.total_images})"
            )
        return self

    def page(self, index: int) -> StoryPage:
        """Return the page at *index*.

        Raises:
            IndexError: If the index is out of bounds.
        """
        if not 0 <= index < len(self.pages):
            raise IndexError(f"Page index {index} is out of bounds for story {self.id}")
        return self.pages[index]

    def advance(self, target: GenerationPhase) -> None:
        """Move to *target* phase.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if not self.phase.can_transition_to(target):
            raise ValueError(f"Illegal phase transition {self.phase} -> {target}")
        self.phase = target
        self.touch()

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> StoryRecord:
        return cls.model_validate(data)
