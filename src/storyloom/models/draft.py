"""Pydantic models for the story text the language model produces.

The model is asked for camelCase JSON (``coverImagePrompt``,
``imagePrompt``); aliases accept that while code uses snake_case.
"""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class DraftPage(BaseModel):
    """Text and illustration prompt for one page."""

    model_config = ConfigDict(populate_by_name=True)

    text: NonEmptyStr
    image_prompt: NonEmptyStr = Field(alias="imagePrompt")


class StoryDraft(BaseModel):
    """Validated story text output."""

    model_config = ConfigDict(populate_by_name=True)

    title: NonEmptyStr
    cover_image_prompt: NonEmptyStr = Field(alias="coverImagePrompt")
    pages: list[DraftPage] = Field(min_length=1)
