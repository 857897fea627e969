"""Message queue abstraction for generation jobs.

Jobs travel as JSON payloads on named topics with at-least-once delivery
and no ordering guarantee. ``InMemoryMessageQueue`` is the local harness:
it delivers every pending message concurrently, optionally in shuffled
order, and redelivers when a handler raises.
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from storyloom.observability.logging import get_logger

log = get_logger(__name__)

COVER_TOPIC = "generate-cover-image"
PAGE_TOPIC = "generate-story-image"

Handler = Callable[[dict[str, Any]], Awaitable[object]]


@runtime_checkable
class MessageQueue(Protocol):
    """Publish/subscribe channel used for fan-out."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Enqueue *payload* on *topic*."""
        ...

    def subscribe(self, topic: str, handler: Handler) -> None:
        """Register *handler* as the consumer of *topic*."""
        ...


@dataclass
class _Envelope:
    topic: str
    body: str
    deliveries: int = 0


class InMemoryMessageQueue:
    """Single-process queue with concurrent, at-least-once delivery.

    Args:
        max_deliveries: Attempts per message before it is dead-lettered.
        shuffle: Deliver each batch in random order.
        seed: Seed for the shuffle, for reproducible interleavings.
    """

    def __init__(
        self,
        *,
        max_deliveries: int = 3,
        shuffle: bool = False,
        seed: int | None = None,
    ) -> None:
        self.max_deliveries = max_deliveries
        self._shuffle = shuffle
        self._random = random.Random(seed)
        self._handlers: dict[str, Handler] = {}
        self._pending: list[_Envelope] = []
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.dead_letters: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        body = json.dumps(payload)
        self._pending.append(_Envelope(topic=topic, body=body))
        self.published.append((topic, json.loads(body)))
        log.debug("message_published", topic=topic)

    def subscribe(self, topic: str, handler: Handler) -> None:
        if topic in self._handlers:
            raise ValueError(f"Topic '{topic}' already has a subscriber")
        self._handlers[topic] = handler

    def published_on(self, topic: str) -> list[dict[str, Any]]:
        return [payload for t, payload in self.published if t == topic]

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def run_until_idle(self) -> int:
        """Deliver messages until none are pending.

        Messages published by handlers are delivered in a later batch.

        Returns:
            Number of deliveries made, redeliveries included.
        """
        delivered = 0
        while self._pending:
            batch, self._pending = self._pending, []
            if self._shuffle:
                self._random.shuffle(batch)
            await asyncio.gather(*(self._deliver(envelope) for envelope in batch))
            delivered += len(batch)
        return delivered

    async def _deliver(self, envelope: _Envelope) -> None:
        payload = json.loads(envelope.body)
        handler = self._handlers.get(envelope.topic)
        if handler is None:
            log.warning("message_unrouted", topic=envelope.topic)
            self.dead_letters.append((envelope.topic, payload))
            return

        envelope.deliveries += 1
        try:
            await handler(payload)
        except Exception as e:
            if envelope.deliveries >= self.max_deliveries:
                log.error(
                    "message_dead_lettered",
                    topic=envelope.topic,
                    deliveries=envelope.deliveries,
                    error=str(e),
                )
                self.dead_letters.append((envelope.topic, payload))
            else:
                log.warning(
                    "message_redelivery_scheduled",
                    topic=envelope.topic,
                    deliveries=envelope.deliveries,
                    error=str(e),
                )
                self._pending.append(envelope)
