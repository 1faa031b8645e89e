"""Event bus routing, dead-letter capture and their in-memory implementations."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from order_relay.core.time_utils import isoformat_z, utc_now
from order_relay.core.types import BusEvent

EventHandler = Callable[[BusEvent], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class EventPattern:
    """Exact-match rule on ``source`` and ``detail-type``; empty means any."""

    source: tuple[str, ...] = ()
    detail_type: tuple[str, ...] = ()

    def matches(self, event: BusEvent) -> bool:
        if self.source and event.source not in self.source:
            return False
        if self.detail_type and event.detail_type not in self.detail_type:
            return False
        return True


class EventBus(Protocol):
    """Publish side of the event bus."""

    name: str

    async def publish(self, event: BusEvent) -> str:
        """Publish an event and return the bus-assigned message id."""
        ...


@dataclass(frozen=True, slots=True)
class DeadLetter:
    """An undeliverable event captured verbatim with the failure attributes."""

    event: dict[str, Any]
    reason: str
    attempts: int
    error: str | None = None
    target: str | None = None
    captured_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "attributes": {
                "reason": self.reason,
                "attempts": self.attempts,
                "error": self.error,
                "target": self.target,
                "capturedAt": isoformat_z(self.captured_at),
            },
        }


class DeadLetterSink(Protocol):
    async def send(self, letter: DeadLetter) -> None: ...


class InMemoryEventBus:
    """Event bus that dispatches to matching subscribers as events are published."""

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self.published: list[BusEvent] = []
        self._subscriptions: list[tuple[EventPattern, EventHandler]] = []
        self._logger = logging.getLogger("order_relay.bus")

    def subscribe(self, pattern: EventPattern, handler: EventHandler) -> None:
        self._subscriptions.append((pattern, handler))

    async def publish(self, event: BusEvent) -> str:
        self.published.append(event)
        for pattern, handler in self._subscriptions:
            if not pattern.matches(event):
                continue
            try:
                await handler(event)
            except Exception as exc:
                self._logger.error(
                    "bus_handler_error",
                    extra={"event_id": event.id, "bus": self.name, "error": str(exc)},
                    exc_info=True,
                )
        return event.id


class InMemoryDeadLetterSink:
    def __init__(self) -> None:
        self.letters: list[DeadLetter] = []

    async def send(self, letter: DeadLetter) -> None:
        self.letters.append(letter)
