"""Error classification and pipeline-level failures.

``classify`` is the single place that turns an upstream exception into a
policy decision: retry in place, advance the style, or advance the model.
``describe_failure`` turns a terminal error into the category and message
shown to the user.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

from storyloom.models.story import FailureKind
from storyloom.providers.base import (
    ProviderAuthError,
    ProviderContentPolicyError,
    ProviderEmptyResponseError,
    ProviderError,
    ProviderRateLimitError,
    is_quota_exhausted,
    is_safety_rejection,
)


class ErrorClass(StrEnum):
    """How the pipeline reacts to a failed call."""

    TRANSIENT = "transient"  # retried in place
    CONTENT_POLICY = "content_policy"  # next style, same model
    INFRASTRUCTURE = "infrastructure"  # next model


def _status_code(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def _is_quota_error(error: BaseException) -> bool:
    return _status_code(error) == 429 and is_quota_exhausted(
        str(error), getattr(error, "code", None)
    )


def classify(error: BaseException) -> ErrorClass:
    """Classify *error* for retry and fallback decisions.

    Provider errors are classified by type. Foreign exceptions fall back
    to their HTTP status and a safety-marker check on the message.
    """
    if isinstance(error, ProviderRateLimitError | ProviderEmptyResponseError):
        return ErrorClass.TRANSIENT
    if isinstance(error, ProviderContentPolicyError):
        return ErrorClass.CONTENT_POLICY
    if isinstance(error, ProviderError | asyncio.TimeoutError):
        return ErrorClass.INFRASTRUCTURE

    status = _status_code(error)
    if status == 429 and not _is_quota_error(error):
        return ErrorClass.TRANSIENT
    if status == 400 and is_safety_rejection(status, str(error)):
        return ErrorClass.CONTENT_POLICY
    return ErrorClass.INFRASTRUCTURE


@dataclass(frozen=True)
class AttemptFailure:
    """One failed (model, style) attempt inside a fallback search."""

    model: str
    style_index: int | None
    error_class: ErrorClass
    message: str


class PipelineError(Exception):
    """Base class for pipeline failures."""


class ExhaustedError(PipelineError):
    """Every (model, style) combination failed for one asset.

    Attributes:
        asset: Label of the asset being generated (``text``, ``cover``, ``page-2``).
        attempts: Every failed attempt, in order.
        last_error: The exception raised by the final attempt.
    """

    def __init__(
        self,
        asset: str,
        attempts: list[AttemptFailure],
        last_error: BaseException | None,
    ) -> None:
        self.asset = asset
        self.attempts = attempts
        self.last_error = last_error
        tried = ", ".join(
            a.model if a.style_index is None else f"{a.model}/style{a.style_index}"
            for a in attempts
        )
        super().__init__(
            f"All fallbacks exhausted for {asset} after {len(attempts)} attempts "
            f"({tried}): {last_error}"
        )


class StructuralError(PipelineError):
    """Generated story text is missing required fields."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("Story text is structurally invalid: " + "; ".join(problems))


class OrchestratorError(PipelineError):
    """Story generation failed before any background work started.

    Attributes:
        kind: User-facing failure category.
        user_message: Diagnostic suitable for display.
        story_id: The record left in ``failed``, if one had been created.
    """

    def __init__(
        self, kind: FailureKind, user_message: str, *, story_id: str | None = None
    ) -> None:
        self.kind = kind
        self.user_message = user_message
        self.story_id = story_id
        super().__init__(f"{kind}: {user_message}")


_MESSAGES = {
    FailureKind.CONTENT_GUIDELINES: (
        "The request was blocked by content guidelines. "
        "Try rephrasing the theme or character descriptions."
    ),
    FailureKind.SERVICE_UNAVAILABLE: (
        "The generation service is temporarily unavailable. Please try again later."
    ),
    FailureKind.NOT_PERMITTED: (
        "The generation service refused the request (permission or quota)."
    ),
}


def describe_failure(error: BaseException, *, subject: str = "") -> tuple[FailureKind, str]:
    """Return the user-facing failure category and message for *error*.

    Args:
        error: Terminal error; an ``ExhaustedError`` is judged by its last error.
        subject: Optional prefix naming what failed (e.g. ``"Page 3"``).
    """
    cause = error.last_error if isinstance(error, ExhaustedError) else error
    if isinstance(cause, ProviderAuthError) or (cause is not None and _is_quota_error(cause)):
        kind = FailureKind.NOT_PERMITTED
    elif cause is not None and classify(cause) is ErrorClass.CONTENT_POLICY:
        kind = FailureKind.CONTENT_GUIDELINES
    else:
        kind = FailureKind.SERVICE_UNAVAILABLE
    message = _MESSAGES[kind]
    if subject:
        message = f"{subject}: {message}"
    return kind, message
