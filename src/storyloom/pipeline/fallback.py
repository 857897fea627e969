"""Two-level model/style fallback search.

For each candidate model, in order, each candidate style is tried in
order. A content-policy rejection means this style was refused by this
model, so the next style is tried on the same model. Any other failure
abandons the remaining styles and moves to the next model. Every attempt
goes through the RetryExecutor, so transient errors never reach this
loop unless they persisted through all retries.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from storyloom.observability.logging import get_logger
from storyloom.pipeline.errors import AttemptFailure, ErrorClass, ExhaustedError, classify
from storyloom.pipeline.retry import RetryExecutor

log = get_logger(__name__)

T = TypeVar("T")

AttemptFn = Callable[[str, str | None], Awaitable[T]]


@dataclass(frozen=True)
class FallbackResult(Generic[T]):
    """A successful asset plus which candidates produced it."""

    asset: T
    model: str
    model_index: int
    style: str | None
    style_index: int
    failures: list[AttemptFailure] = field(default_factory=list)

    @property
    def attempts(self) -> int:
        """Attempts made, the successful one included."""
        return len(self.failures) + 1

    @property
    def used_fallback(self) -> bool:
        return self.model_index > 0 or self.style_index > 0


class FallbackResolver:
    """Drive the model × style search for one asset.

    Args:
        retry: Executor wrapping each individual attempt.
    """

    def __init__(self, retry: RetryExecutor | None = None) -> None:
        self.retry = retry or RetryExecutor()

    async def resolve(
        self,
        models: Sequence[str],
        styles: Sequence[str | None],
        attempt_fn: AttemptFn[T],
        *,
        asset: str = "asset",
    ) -> FallbackResult[T]:
        """Return the first successful attempt.

        Args:
            models: Primary model followed by its fallbacks.
            styles: Primary style followed by its backups. Pass ``[None]``
                for assets without a style axis (story text).
            attempt_fn: Called as ``attempt_fn(model, style)``.
            asset: Label used in logs and in the exhaustion error.

        Raises:
            ExhaustedError: If every combination failed.
            ValueError: If either candidate list is empty.
        """
        if not models or not styles:
            raise ValueError("resolve needs at least one model and one style")

        failures: list[AttemptFailure] = []
        last_error: BaseException | None = None
        has_style_axis = any(style is not None for style in styles)
        event = "image_attempt_failed" if has_style_axis else "text_attempt_failed"

        for model_index, model in enumerate(models):
            for style_index, style in enumerate(styles):
                async def attempt(m: str = model, s: str | None = style) -> T:
                    return await attempt_fn(m, s)

                try:
                    result = await self.retry.execute(attempt, label=f"{asset}:{model}")
                except Exception as e:
                    last_error = e
                    error_class = classify(e)
                    failures.append(
                        AttemptFailure(
                            model=model,
                            style_index=style_index if has_style_axis else None,
                            error_class=error_class,
                            message=str(e),
                        )
                    )
                    log.warning(
                        event,
                        asset=asset,
                        model=model,
                        style_index=style_index,
                        error_class=str(error_class),
                        error=str(e),
                    )
                    if error_class is ErrorClass.CONTENT_POLICY and style_index + 1 < len(styles):
                        log.info(
                            "style_fallback",
                            asset=asset,
                            model=model,
                            next_style_index=style_index + 1,
                        )
                        continue
                    break

                if model_index or style_index:
                    log.info(
                        "asset_generated_with_fallback",
                        asset=asset,
                        model=model,
                        model_index=model_index,
                        style_index=style_index,
                    )
                return FallbackResult(
                    asset=result,
                    model=model,
                    model_index=model_index,
                    style=style,
                    style_index=style_index,
                    failures=failures,
                )

            if model_index + 1 < len(models):
                log.info(
                    "model_fallback",
                    asset=asset,
                    failed_model=model,
                    next_model=models[model_index + 1],
                )

        raise ExhaustedError(asset, failures, last_error)
