"""Scripted fake providers for pipeline tests.

Each fake stands in for a remote text or image model and is scripted so
tests can dictate exactly which attempts fail and how.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from storyloom.providers.image import ImageResult
from storyloom.providers.image_placeholder import PlaceholderImageProvider

ART_STYLES = ("watercolor", "paper cutout", "crayon sketch")


def story_json(page_count: int = 4, title: str = "The Moon Picnic") -> str:
    """Well-formed story text output as a model would return it."""
    return json.dumps(
        {
            "title": title,
            "coverImagePrompt": "Two children on a hill under a huge friendly moon",
            "pages": [
                {"text": f"Page {i + 1} text.", "imagePrompt": f"Scene {i + 1}"}
                for i in range(page_count)
            ],
        }
    )


class FakeTextProvider:
    """Text provider returning scripted outputs or raising scripted errors.

    Outputs are consumed in order; the last one repeats.
    """

    def __init__(self, model: str, outputs: list[str | Exception]) -> None:
        self._model = model
        self._outputs = list(outputs)
        self.calls: list[tuple[str, str]] = []

    @property
    def model(self) -> str:
        return self._model

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.9,
        thinking_budget: int | None = None,
    ) -> str:
        self.calls.append((system_prompt, user_prompt))
        outcome = self._outputs.pop(0) if len(self._outputs) > 1 else self._outputs[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ScriptedImageProvider:
    """Placeholder images, with failures scripted by prompt substring.

    Args:
        model: Model name reported by the provider.
        failures: Maps a substring of the prompt (usually a style name)
            to the exception raised when the prompt contains it. ``"*"``
            matches every prompt.
    """

    def __init__(self, model: str, failures: dict[str, Exception] | None = None) -> None:
        self._model = model
        self.failures = failures or {}
        self._inner = PlaceholderImageProvider()
        self.prompts: list[str] = []
        self.references: list[ImageResult] = []

    @property
    def model(self) -> str:
        return self._model

    def _check(self, prompt: str) -> None:
        self.prompts.append(prompt)
        for marker, error in self.failures.items():
            if marker == "*" or marker in prompt:
                raise error

    async def generate(self, prompt: str, *, aspect_ratio: str = "1:1") -> ImageResult:
        self._check(prompt)
        return await self._inner.generate(prompt, aspect_ratio=aspect_ratio)

    async def edit(
        self, prompt: str, reference: ImageResult, *, aspect_ratio: str = "1:1"
    ) -> ImageResult:
        self._check(prompt)
        self.references.append(reference)
        return await self._inner.edit(prompt, reference, aspect_ratio=aspect_ratio)


def factory_from(providers: dict[str, Any]) -> Callable[[str], Any]:
    """Provider factory serving pre-built fakes by model name."""

    def factory(model: str) -> Any:
        try:
            return providers[model]
        except KeyError:
            raise AssertionError(f"unexpected model requested: {model}") from None

    return factory


async def no_sleep(_delay: float) -> None:
    return None
