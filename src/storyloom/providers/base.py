"""Base protocol and error types for text-generation providers."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

# Substrings upstream APIs use when their safety system rejects a prompt.
SAFETY_MARKERS = (
    "safety system",
    "content_policy",
    "content policy",
    "moderation_blocked",
    "content guidelines",
    "safety filter",
)


def is_safety_rejection(status_code: int | None, message: str) -> bool:
    """Return True for an HTTP 400 whose message carries a safety marker."""
    if status_code is not None and status_code != 400:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in SAFETY_MARKERS)


# A 429 carrying one of these is an exhausted quota, not a rate limit.
QUOTA_MARKERS = ("insufficient_quota", "billing_hard_limit_reached")


def is_quota_exhausted(message: str, code: object = None) -> bool:
    """Return True when a 429 reports an exhausted account quota."""
    if isinstance(code, str) and code in QUOTA_MARKERS:
        return True
    lowered = message.lower()
    return any(marker in lowered for marker in QUOTA_MARKERS)


@runtime_checkable
class TextProvider(Protocol):
    """Protocol for story text generation backends.

    Implementations return the raw model text. Callers are expected to
    tolerate near-JSON output and repair it before parsing.
    """

    @property
    def model(self) -> str:
        """Return the model identifier this provider calls."""
        ...

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.9,
        thinking_budget: int | None = None,
    ) -> str:
        """Generate text for a system/user prompt pair.

        Args:
            system_prompt: Instructions framing the writer's role.
            user_prompt: The concrete story request.
            temperature: Sampling temperature.
            thinking_budget: Optional model-specific reasoning budget.

        Returns:
            The generated text.

        Raises:
            ProviderError: If generation fails.
        """
        ...


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class ProviderConnectionError(ProviderError):
    """Raised when connection to the provider fails or times out."""


class ProviderRateLimitError(ProviderError):
    """Raised when rate limit is exceeded."""


class ProviderModelError(ProviderError):
    """Raised when the requested model is unavailable or unknown."""


class ProviderAuthError(ProviderError):
    """Raised on rejected credentials, missing permissions or exhausted quota."""


class ProviderContentPolicyError(ProviderError):
    """Raised when the provider's safety system rejects the request."""


class ProviderEmptyResponseError(ProviderError):
    """Raised when the provider answered without any payload."""


class ProviderMalformedResponseError(ProviderError):
    """Raised when the provider's output cannot be interpreted."""
