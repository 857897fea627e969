"""Prompt builders for story text, cover and page illustrations.

Templates live in ``storyloom/prompts/templates``; this module decides
what goes into each variable.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from storyloom.models.request import GenerationRequest
from storyloom.prompts.loader import PromptLoader

COVER_ASPECT_RATIO = "1:1"
PAGE_ASPECT_RATIO = "1:1"

_loader: PromptLoader | None = None


def _get_loader() -> PromptLoader:
    global _loader
    if _loader is None:
        _loader = PromptLoader()
    return _loader


@dataclass(frozen=True)
class CharacterSketch:
    """A resolved story character: a name plus visual appearance."""

    name: str
    appearance: str = ""

    def render(self) -> str:
        return f"{self.name}: {self.appearance}" if self.appearance else self.name


def render_characters(characters: Sequence[CharacterSketch]) -> str:
    """Join character sketches into the block used by image prompts."""
    return "\n".join(c.render() for c in characters)


def _age_label(age_range: tuple[int, int]) -> str:
    low, high = age_range
    return str(low) if low == high else f"{low}-{high}"


def build_story_prompts(
    request: GenerationRequest,
    age_range: tuple[int, int],
    characters: Sequence[CharacterSketch],
) -> tuple[str, str]:
    """Return the ``(system, user)`` prompt pair for story text."""
    template = _get_loader().load("story")
    age_label = _age_label(age_range)

    details = []
    if characters:
        details.append(f"- Main character(s): {', '.join(c.name for c in characters)}")
    else:
        details.append("- Generic child character")
    details.append(f"- Age level: {age_label} years old")
    details.append(f"- Theme: {request.theme}")
    if request.mood:
        details.append(f"- Mood: {request.mood}")
    if request.story_about:
        details.append(f"- The story is about: {request.story_about}")
    details.append(f"- Story length: {request.page_count} pages")

    rhyme_rule = (
        "Write the text of every page in rhyming verse."
        if request.should_rhyme
        else "Write the text in plain prose; it should not rhyme."
    )
    user = template.render(
        "user",
        details="\n".join(details),
        page_count=request.page_count,
        age_label=age_label,
        rhyme_rule=rhyme_rule,
    )
    return template.render("system"), user


def build_cover_prompt(
    *,
    title: str,
    cover_prompt: str,
    style: str,
    character_descriptions: str = "",
) -> str:
    """Full image prompt for the cover in one art style."""
    characters_block = (
        f"Characters:\n{character_descriptions}" if character_descriptions else ""
    )
    return _get_loader().load("cover").render(
        "user",
        aspect_ratio=COVER_ASPECT_RATIO,
        cover_prompt=cover_prompt.rstrip(". "),
        style=style,
        characters_block=characters_block,
        title=title,
    )


def build_page_prompt(
    *,
    image_prompt: str,
    style: str,
    character_descriptions: str = "",
) -> str:
    """Full image prompt for one page, conditioned on the cover."""
    return _get_loader().load("page").render(
        "user",
        image_prompt=image_prompt,
        character_descriptions=character_descriptions or "Follow the characters on the cover image.",
        style=style,
        aspect_ratio=PAGE_ASPECT_RATIO,
    )
