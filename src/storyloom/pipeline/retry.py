"""Retry/backoff executor for a single remote call.

Only transient failures (rate limits, empty payloads) are retried in
place. Every other error is re-raised on the first occurrence so the
fallback resolver can decide what to do with it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from storyloom.observability.logging import get_logger
from storyloom.pipeline.errors import ErrorClass, classify

log = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0


def _is_transient(error: BaseException) -> bool:
    return classify(error) is ErrorClass.TRANSIENT


class RetryExecutor:
    """Run an async operation with bounded exponential backoff.

    The n-th retry waits ``base_delay * 2**(n-1)`` seconds, so with the
    defaults a call is tried at most three times with 1 s and 2 s pauses.

    Args:
        max_attempts: Total attempts including the first call.
        base_delay: Delay before the first retry, in seconds.
        sleep: Awaitable sleep function (tests pass a no-op).
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    async def execute(self, operation: Callable[[], Awaitable[T]], *, label: str = "") -> T:
        """Await *operation*, retrying it while it fails transiently.

        Raises:
            Exception: The last error once attempts run out, or the first
                non-transient error unchanged.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, min=0),
            retry=retry_if_exception(_is_transient),
            before_sleep=lambda state: self._log_retry(state, label),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await operation()
        raise AssertionError("retry loop ended without an outcome")

    def _log_retry(self, state: RetryCallState, label: str) -> None:
        error = state.outcome.exception() if state.outcome else None
        log.info(
            "retrying_transient_error",
            operation=label or None,
            attempt=state.attempt_number,
            max_attempts=self.max_attempts,
            delay=state.next_action.sleep if state.next_action else None,
            error=str(error),
        )
