"""Delivery of ``OrderCompleted`` events to the buyer's order webhook.

Each matching event becomes one PATCH against the configured endpoint, with
the ``*`` placeholder replaced by the event's car order id and the event
detail as the body. Attempts share one rate limiter, back off exponentially
with jitter and stop at the attempt budget or the maximum event age, after
which the event is captured unchanged in the dead-letter sink.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from urllib.parse import quote

import httpx

from order_relay.core.bus import DeadLetter, DeadLetterSink, EventPattern
from order_relay.core.config import Settings
from order_relay.core.errors import DeliveryExhausted
from order_relay.core.logging import correlated
from order_relay.core.time_utils import Clock, utc_now
from order_relay.core.types import COMPLETION_DETAIL_TYPE, COMPLETION_SOURCE, BusEvent

logger = logging.getLogger(__name__)

COMPLETED_ORDERS = EventPattern(source=(COMPLETION_SOURCE,), detail_type=(COMPLETION_DETAIL_TYPE,))

_RETRYABLE_STATUSES = frozenset({408, 429})

Sleep = Callable[[float], Awaitable[None]]


class PathResolutionError(ValueError):
    pass


def resolve_path(payload: dict[str, Any], path: str) -> Any:
    """Resolve a ``$.a.b`` style path against an event envelope."""

    if path == "$":
        return payload
    if not path.startswith("$."):
        raise PathResolutionError(f"unsupported path '{path}'")

    current: Any = payload
    for part in path[2:].split("."):
        if not isinstance(current, dict) or part not in current:
            raise PathResolutionError(f"'{path}' not found in event")
        current = current[part]
    return current


@dataclass(frozen=True, slots=True)
class RelayTarget:
    """Destination and delivery policy for relayed events."""

    endpoint: str
    method: str = "PATCH"
    headers: dict[str, str] = field(default_factory=dict)
    path_parameter: str = "$.detail.carOrderId"
    input_path: str = "$.detail"
    rate_limit_per_s: float = 50.0
    max_attempts: int = 10
    max_event_age: timedelta = timedelta(minutes=60)
    backoff_base_s: float = 1.0
    backoff_max_s: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RelayTarget":
        headers = {"x-api-key": settings.RELAY_API_KEY} if settings.RELAY_API_KEY else {}
        return cls(
            endpoint=settings.RELAY_ENDPOINT,
            headers=headers,
            rate_limit_per_s=settings.RELAY_RATE_LIMIT_PER_S,
            max_attempts=max(1, settings.RELAY_MAX_ATTEMPTS),
            max_event_age=timedelta(seconds=settings.RELAY_MAX_EVENT_AGE_S),
            backoff_base_s=settings.RELAY_BACKOFF_BASE_S,
            backoff_max_s=settings.RELAY_BACKOFF_MAX_S,
        )

    def url_for(self, envelope: dict[str, Any]) -> str:
        value = resolve_path(envelope, self.path_parameter)
        if value is None or not str(value).strip():
            raise PathResolutionError(f"'{self.path_parameter}' is empty")
        return self.endpoint.replace("*", quote(str(value), safe=""), 1)

    def body_for(self, envelope: dict[str, Any]) -> Any:
        return resolve_path(envelope, self.input_path)


class RateLimiter:
    """Token bucket shared by every delivery to one destination."""

    def __init__(
        self,
        rate_per_s: float,
        burst: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if rate_per_s <= 0:
            raise ValueError("rate_per_s must be positive")
        self._rate = rate_per_s
        self._capacity = burst if burst is not None else max(1.0, rate_per_s)
        self._tokens = self._capacity
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                self._tokens = min(self._capacity, self._tokens + (now - self._updated) * self._rate)
                self._updated = now
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await self._sleep((1 - self._tokens) / self._rate)


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    event_id: str
    delivered: bool
    attempts: int
    status_code: int | None = None
    dead_letter_reason: str | None = None


class CompletionRelay:
    """Filters bus events and delivers the matching ones to the relay target."""

    def __init__(
        self,
        target: RelayTarget,
        http: httpx.AsyncClient,
        dead_letters: DeadLetterSink,
        limiter: RateLimiter | None = None,
        pattern: EventPattern = COMPLETED_ORDERS,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self.target = target
        self.pattern = pattern
        self._http = http
        self._dead_letters = dead_letters
        self._limiter = limiter or RateLimiter(target.rate_limit_per_s)
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter

    async def handle(self, event: BusEvent) -> DeliveryOutcome | None:
        """Bus subscription entry point; non-matching events are ignored."""

        if not self.pattern.matches(event):
            return None
        return await self.deliver(event)

    async def deliver(self, event: BusEvent) -> DeliveryOutcome:
        log = correlated(logger, "car-orders-api-destination.deliver")
        envelope = event.to_dict()

        try:
            url = self.target.url_for(envelope)
            body = self.target.body_for(envelope)
        except PathResolutionError as exc:
            return await self._dead_letter(log, event, None, DeliveryExhausted("invalid_event", 0, str(exc)))

        last_error: str | None = None
        status_code: int | None = None
        for attempt in range(1, self.target.max_attempts + 1):
            if self._clock() - event.time > self.target.max_event_age:
                return await self._dead_letter(
                    log, event, url, DeliveryExhausted("max_event_age", attempt - 1, last_error)
                )

            await self._limiter.acquire()
            try:
                response = await self._http.request(self.target.method, url, json=body, headers=self.target.headers)
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                status_code = None
                retryable = True
            else:
                status_code = response.status_code
                if response.is_success:
                    log.info(
                        "relay_delivered",
                        extra={"event_id": event.id, "url": url, "attempts": attempt, "status_code": status_code},
                    )
                    return DeliveryOutcome(event.id, delivered=True, attempts=attempt, status_code=status_code)
                last_error = f"status {status_code}"
                retryable = status_code in _RETRYABLE_STATUSES or status_code >= 500

            log.warning(
                "relay_attempt_failed",
                extra={
                    "event_id": event.id,
                    "url": url,
                    "attempt": attempt,
                    "max_attempts": self.target.max_attempts,
                    "error": last_error,
                },
            )
            if not retryable:
                return await self._dead_letter(
                    log, event, url, DeliveryExhausted("non_retryable_status", attempt, last_error), status_code
                )
            if attempt < self.target.max_attempts:
                await self._sleep(self._backoff(attempt))

        return await self._dead_letter(
            log, event, url, DeliveryExhausted("retry_budget", self.target.max_attempts, last_error), status_code
        )

    def _backoff(self, attempt: int) -> float:
        delay = min(self.target.backoff_max_s, self.target.backoff_base_s * (2 ** (attempt - 1)))
        return delay / 2 + self._jitter() * delay / 2

    async def _dead_letter(
        self,
        log: logging.LoggerAdapter,
        event: BusEvent,
        url: str | None,
        exhausted: DeliveryExhausted,
        status_code: int | None = None,
    ) -> DeliveryOutcome:
        letter = DeadLetter(
            event=event.to_dict(),
            reason=exhausted.reason,
            attempts=exhausted.attempts,
            error=exhausted.last_error,
            target=url or self.target.endpoint,
        )
        await self._dead_letters.send(letter)
        log.warning(
            "relay_dead_lettered",
            extra={
                "event_id": event.id,
                "reason": exhausted.reason,
                "attempts": exhausted.attempts,
                "error": exhausted.last_error,
            },
        )
        return DeliveryOutcome(
            event.id,
            delivered=False,
            attempts=exhausted.attempts,
            status_code=status_code,
            dead_letter_reason=exhausted.reason,
        )
