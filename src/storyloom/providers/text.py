"""Story text generation over LangChain chat models.

``create_text_provider`` maps a catalog text model to its LangChain
provider through ``init_chat_model`` and wraps the result in
``ChatModelTextProvider``, which normalizes SDK failures into the
provider error hierarchy.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, NoReturn

from langchain_core.messages import HumanMessage, SystemMessage

from storyloom.observability.logging import get_logger
from storyloom.providers.base import (
    ProviderAuthError,
    ProviderConnectionError,
    ProviderContentPolicyError,
    ProviderEmptyResponseError,
    ProviderError,
    ProviderModelError,
    ProviderRateLimitError,
    is_quota_exhausted,
    is_safety_rejection,
)

if TYPE_CHECKING:
    from langchain_core.language_models import BaseChatModel

log = get_logger(__name__)

# init_chat_model provider name, env var holding the key, pip package
_PROVIDERS: dict[str, tuple[str, str, str]] = {
    "openai": ("openai", "OPENAI_API_KEY", "langchain-openai"),
    "google": ("google_genai", "GEMINI_API_KEY", "langchain-google-genai"),
}

_SAFETY_FINISH_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "content_filter"})


def provider_for_model(model: str) -> str:
    """Return the provider family name for a text model identifier.

    Raises:
        ProviderModelError: If the model family is not recognised.
    """
    lowered = model.lower()
    if lowered.startswith(("gpt-", "o1", "o3", "o4")):
        return "openai"
    if lowered.startswith("gemini"):
        return "google"
    raise ProviderModelError(model, f"Unknown text model: {model}")


class ChatModelTextProvider:
    """TextProvider backed by a LangChain ``BaseChatModel``.

    Args:
        chat_model: Configured LangChain chat model.
        model: Catalog identifier of the wrapped model.
        provider: Provider family (``openai`` or ``google``).
    """

    def __init__(self, chat_model: BaseChatModel, model: str, provider: str) -> None:
        self._chat_model = chat_model
        self._model = model
        self._provider = provider

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
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        update: dict[str, Any] = {"temperature": temperature}
        if thinking_budget is not None and self._provider == "google":
            update["thinking_budget"] = thinking_budget
        chat_model = self._chat_model.model_copy(update=update)

        log.debug(
            "text_generate_start",
            model=self._model,
            temperature=temperature,
            prompt_length=len(user_prompt),
        )
        try:
            response = await chat_model.ainvoke(messages)
        except ProviderError:
            raise
        except Exception as e:
            self._handle_error(e)

        metadata = getattr(response, "response_metadata", None) or {}
        finish_reason = str(metadata.get("finish_reason", ""))
        if finish_reason in _SAFETY_FINISH_REASONS:
            raise ProviderContentPolicyError(
                self._provider, f"Response withheld by safety filter: {finish_reason}"
            )

        content = response.content
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        text = str(content).strip()
        if not text:
            raise ProviderEmptyResponseError(self._provider, "No text in model response")

        log.info("text_generate_complete", model=self._model, length=len(text))
        return text

    def _handle_error(self, error: Exception) -> NoReturn:
        """Translate SDK exceptions surfaced through LangChain."""
        message = str(error)
        status = getattr(error, "status_code", None) or getattr(error, "code", None)
        status = status if isinstance(status, int) else None
        name = type(error).__name__

        if (status == 429 or "RateLimit" in name) and is_quota_exhausted(
            message, getattr(error, "code", None)
        ):
            raise ProviderAuthError(self._provider, f"Quota exhausted: {message}") from error
        if status == 429 or "RateLimit" in name or "ResourceExhausted" in name:
            raise ProviderRateLimitError(self._provider, f"Rate limited: {message}") from error
        if status in (401, 403) or "Authentication" in name or "PermissionDenied" in name:
            raise ProviderAuthError(self._provider, f"Not permitted: {message}") from error
        if is_safety_rejection(status, message):
            raise ProviderContentPolicyError(
                self._provider, f"Content policy rejection: {message}"
            ) from error
        if "Connection" in name or "Timeout" in name:
            raise ProviderConnectionError(self._provider, f"Connection error: {message}") from error
        raise ProviderError(self._provider, f"Text generation failed: {message}") from error


def create_text_provider(model: str, **kwargs: Any) -> ChatModelTextProvider:
    """Create a text provider for a catalog text model.

    Args:
        model: Text model identifier (``gpt-4o``, ``gemini-2.5-pro``).
        **kwargs: Extra options for ``init_chat_model`` (api_key, timeout, ...).

    Raises:
        ProviderModelError: If the model family is unknown.
        ProviderError: If credentials or the LangChain integration are missing.
    """
    provider = provider_for_model(model)
    init_name, key_env, package = _PROVIDERS[provider]

    api_key = kwargs.pop("api_key", None) or os.getenv(key_env)
    if not api_key:
        log.error("provider_config_error", provider=provider, missing=key_env)
        raise ProviderAuthError(provider, f"API key required. Set {key_env} environment variable.")
    kwargs["api_key"] = api_key
    kwargs.setdefault("max_retries", 0)

    from langchain.chat_models import init_chat_model

    try:
        chat_model = init_chat_model(model=model, model_provider=init_name, **kwargs)
    except ImportError as e:
        log.error("provider_import_error", provider=provider, package=package)
        raise ProviderError(provider, f"{package} not installed. Run: uv add {package}") from e

    log.info("chat_model_created", provider=provider, model=model)
    return ChatModelTextProvider(chat_model, model=model, provider=provider)
