"""Pydantic models for the caller's story request and character profiles."""

from __future__ import annotations

from datetime import date
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

from storyloom.providers.models import (
    DEFAULT_COVER_MODEL,
    DEFAULT_PAGE_MODEL,
    DEFAULT_TEXT_MODEL,
)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class CharacterProfile(BaseModel):
    """A stored character (a child or a saved character) owned by a user."""

    model_config = ConfigDict(frozen=True)

    profile_id: NonEmptyStr
    name: NonEmptyStr
    birth_date: date | None = Field(
        default=None, description="Set for child profiles; drives the audience age range"
    )
    appearance: str = Field(default="", description="Visual description used in image prompts")

    def age_on(self, today: date) -> int | None:
        """Return the profile's age in whole years on *today*, if known."""
        if self.birth_date is None:
            return None
        had_birthday = (today.month, today.day) >= (self.birth_date.month, self.birth_date.day)
        return today.year - self.birth_date.year - (0 if had_birthday else 1)


class StoryCharacter(BaseModel):
    """A character requested for the story.

    Either references a stored profile, carries a free-text description,
    or both (the description then overrides the profile's appearance).
    """

    model_config = ConfigDict(frozen=True)

    name: NonEmptyStr
    profile_id: str | None = None
    description: str | None = None

    @model_validator(mode="after")
    def _require_reference_or_description(self) -> StoryCharacter:
        if not self.profile_id and not (self.description and self.description.strip()):
            raise ValueError(
                f"Character '{self.name}' needs a profile_id or a description"
            )
        return self


class GenerationRequest(BaseModel):
    """Immutable input to the orchestrator."""

    model_config = ConfigDict(frozen=True)

    owner_id: NonEmptyStr
    theme: NonEmptyStr
    mood: str | None = None
    story_about: str | None = Field(default=None, description="Optional plot hint")
    should_rhyme: bool = False
    page_count: int = Field(default=4, ge=1, le=12)
    target_age: int = Field(
        default=5, ge=1, le=14, description="Used when no character references a child profile"
    )
    characters: tuple[StoryCharacter, ...] = ()
    text_model: NonEmptyStr = DEFAULT_TEXT_MODEL
    cover_image_model: NonEmptyStr = DEFAULT_COVER_MODEL
    page_image_model: NonEmptyStr = DEFAULT_PAGE_MODEL
    art_styles: tuple[NonEmptyStr, ...] = Field(
        min_length=1,
        max_length=3,
        description="Primary art-style description followed by up to two backups",
    )
