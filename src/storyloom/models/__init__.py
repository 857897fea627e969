"""Pydantic models for requests, story records and generation jobs."""

from storyloom.models.draft import DraftPage, StoryDraft
from storyloom.models.jobs import ConsistencyReference, CoverGenerationJob, PageGenerationJob
from storyloom.models.request import CharacterProfile, GenerationRequest, StoryCharacter
from storyloom.models.story import (
    AssetProvenance,
    FailureKind,
    GenerationMetadata,
    GenerationPhase,
    StoryPage,
    StoryRecord,
)

__all__ = [
    "AssetProvenance",
    "CharacterProfile",
    "ConsistencyReference",
    "CoverGenerationJob",
    "DraftPage",
    "FailureKind",
    "GenerationMetadata",
    "GenerationPhase",
    "GenerationRequest",
    "PageGenerationJob",
    "StoryCharacter",
    "StoryDraft",
    "StoryPage",
    "StoryRecord",
]
