"""Story orchestrator: text generation, record creation and cover fan-out.

``Orchestrator.generate`` runs synchronously up to the point where the
story record exists and the cover job is published; everything after
that happens in the workers. If text generation fails or its output is
structurally invalid, no record is written and ``OrchestratorError`` is
raised to the caller. A record whose cover job cannot be published is
marked failed before the error is raised.
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from collections.abc import Callable
from datetime import date
from typing import Any

from pydantic import ValidationError

from storyloom.messaging import COVER_TOPIC, MessageQueue
from storyloom.models.draft import StoryDraft
from storyloom.models.jobs import CoverGenerationJob
from storyloom.models.request import GenerationRequest
from storyloom.models.story import GenerationMetadata, StoryPage, StoryRecord
from storyloom.observability.logging import get_logger
from storyloom.pipeline.errors import (
    ExhaustedError,
    OrchestratorError,
    StructuralError,
    describe_failure,
)
from storyloom.pipeline.fallback import FallbackResolver
from storyloom.pipeline.prompts import CharacterSketch, build_story_prompts, render_characters
from storyloom.pipeline.workers import mark_story_failed
from storyloom.providers.base import ProviderMalformedResponseError, TextProvider
from storyloom.providers.models import text_model_chain
from storyloom.providers.text import create_text_provider
from storyloom.storage.documents import TransactionalStore
from storyloom.storage.profiles import ProfileDirectory

log = get_logger(__name__)

DEFAULT_TEXT_TIMEOUT = 540.0
DEFAULT_TEMPERATURE = 0.9

TextProviderFactory = Callable[[str], TextProvider]

_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def repair_json(text: str) -> str:
    """Best-effort cleanup of near-JSON model output.

    Strips markdown code fences, keeps the outermost ``{...}`` object and
    drops trailing commas before closing brackets.
    """
    cleaned = _FENCE.sub("", text.strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    return _TRAILING_COMMA.sub(r"\1", cleaned)


def parse_story_json(text: str, *, model: str) -> dict[str, Any]:
    """Parse story text output into a dict.

    Raises:
        ProviderMalformedResponseError: If the output is not a JSON object.
    """
    try:
        data = json.loads(repair_json(text))
    except json.JSONDecodeError as e:
        raise ProviderMalformedResponseError(model, f"Story output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProviderMalformedResponseError(model, "Story output is not a JSON object")
    return data


def validate_story(data: dict[str, Any], page_count: int) -> StoryDraft:
    """Validate parsed story output against the request.

    Raises:
        StructuralError: If fields are missing or the page count is wrong.
    """
    try:
        draft = StoryDraft.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise StructuralError(problems) from e
    if len(draft.pages) != page_count:
        raise StructuralError([f"expected {page_count} pages, got {len(draft.pages)}"])
    return draft


class Orchestrator:
    """Entry point that turns a request into a story record and a cover job.

    Args:
        store: Story document store.
        queue: Message queue the cover job is published to.
        profiles: Lookup for referenced character profiles.
        resolver: Fallback resolver used for the text model chain.
        text_provider_factory: Builds a text provider for a model name.
        text_timeout: Per-attempt timeout for text generation, in seconds.
        temperature: Sampling temperature for story text.
        thinking_budget: Optional reasoning budget for models that take one.
        today: Clock used for profile ages.
    """

    def __init__(
        self,
        store: TransactionalStore,
        queue: MessageQueue,
        profiles: ProfileDirectory,
        resolver: FallbackResolver,
        text_provider_factory: TextProviderFactory = create_text_provider,
        *,
        text_timeout: float = DEFAULT_TEXT_TIMEOUT,
        temperature: float = DEFAULT_TEMPERATURE,
        thinking_budget: int | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.queue = queue
        self.profiles = profiles
        self.resolver = resolver
        self._text_provider_factory = text_provider_factory
        self._text_providers: dict[str, TextProvider] = {}
        self.text_timeout = text_timeout
        self.temperature = temperature
        self.thinking_budget = thinking_budget
        self._today = today

    def _text_provider(self, model: str) -> TextProvider:
        provider = self._text_providers.get(model)
        if provider is None:
            provider = self._text_provider_factory(model)
            self._text_providers[model] = provider
        return provider

    async def resolve_characters(
        self, request: GenerationRequest
    ) -> tuple[list[CharacterSketch], list[int]]:
        """Look up referenced profiles and merge free-text descriptions.

        Returns:
            Character sketches in request order, and the known ages of
            referenced profiles.
        """
        sketches: list[CharacterSketch] = []
        ages: list[int] = []
        today = self._today()
        for character in request.characters:
            appearance = (character.description or "").strip()
            if character.profile_id:
                profile = await self.profiles.get_profile(request.owner_id, character.profile_id)
                if profile is None:
                    log.warning(
                        "character_profile_missing",
                        owner_id=request.owner_id,
                        profile_id=character.profile_id,
                    )
                    if not appearance:
                        continue
                else:
                    age = profile.age_on(today)
                    if age is not None:
                        ages.append(age)
                    appearance = appearance or profile.appearance
            sketches.append(CharacterSketch(name=character.name, appearance=appearance))
        return sketches, ages

    @staticmethod
    def age_range(ages: list[int], default: int) -> tuple[int, int]:
        if not ages:
            return default, default
        return min(ages), max(ages)

    async def generate(self, request: GenerationRequest) -> str:
        """Generate story text, create the record and publish the cover job.

        Returns:
            The new story id.

        Raises:
            OrchestratorError: If text generation is exhausted or its
                output is structurally invalid (nothing is persisted), or
                if the cover job cannot be published (the record is
                marked failed).
        """
        sketches, ages = await self.resolve_characters(request)
        age_range = self.age_range(ages, request.target_age)
        system_prompt, user_prompt = build_story_prompts(request, age_range, sketches)

        async def attempt(model: str, _style: str | None) -> dict[str, Any]:
            provider = self._text_provider(model)
            text = await asyncio.wait_for(
                provider.generate(
                    system_prompt,
                    user_prompt,
                    temperature=self.temperature,
                    thinking_budget=self.thinking_budget,
                ),
                timeout=self.text_timeout,
            )
            return parse_story_json(text, model=model)

        try:
            result = await self.resolver.resolve(
                text_model_chain(request.text_model), [None], attempt, asset="text"
            )
            draft = validate_story(result.asset, request.page_count)
        except (ExhaustedError, StructuralError) as e:
            kind, message = describe_failure(e)
            log.error(
                "story_text_failed",
                owner_id=request.owner_id,
                error=str(e),
                failure_kind=str(kind),
            )
            raise OrchestratorError(kind, message) from e

        character_descriptions = render_characters(sketches)
        record = StoryRecord(
            id=uuid.uuid4().hex,
            owner_id=request.owner_id,
            title=draft.title,
            pages=[StoryPage(index=i, text=page.text) for i, page in enumerate(draft.pages)],
            total_images=len(draft.pages),
            metadata=GenerationMetadata(
                text_model=result.model,
                requested_text_model=request.text_model,
                cover_prompt=draft.cover_image_prompt,
                art_styles=list(request.art_styles),
                character_descriptions=character_descriptions,
                age_range=age_range,
            ),
        )
        self.store.create(record.id, record.to_document())
        log.info(
            "story_record_created",
            story_id=record.id,
            owner_id=record.owner_id,
            pages=record.total_images,
            text_model=result.model,
            text_model_fallback=record.metadata.text_model_fallback,
        )

        job = CoverGenerationJob(
            story_id=record.id,
            owner_id=record.owner_id,
            model=request.cover_image_model,
            art_styles=request.art_styles,
            character_descriptions=character_descriptions,
            title=draft.title,
            cover_prompt=draft.cover_image_prompt,
            page_prompts=tuple(page.image_prompt for page in draft.pages),
            page_model=request.page_image_model,
        )
        try:
            await self.queue.publish(COVER_TOPIC, job.to_payload())
        except Exception as e:
            await mark_story_failed(self.store, record.id, e, subject="Cover")
            kind, message = describe_failure(e, subject="Cover")
            raise OrchestratorError(kind, message, story_id=record.id) from e
        log.info("cover_job_published", story_id=record.id, model=job.model)
        return record.id
