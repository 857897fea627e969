"""Completion notification interface.

The page worker that completes a story calls ``notify`` exactly once.
Delivery (push, email, webhook) is left to implementations.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from storyloom.observability.logging import get_logger

log = get_logger(__name__)


@runtime_checkable
class CompletionNotifier(Protocol):
    """Fire-and-forget notification that a story is fully illustrated."""

    async def notify(self, owner_id: str, story_id: str, title: str) -> None:
        """Tell *owner_id* that *story_id* is ready."""
        ...


class LoggingNotifier:
    """Notifier that only records the event in the log."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def notify(self, owner_id: str, story_id: str, title: str) -> None:
        self.sent.append((owner_id, story_id, title))
        log.info("story_ready_notification", owner_id=owner_id, story_id=story_id, title=title)
