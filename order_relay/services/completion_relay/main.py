"""Relay worker that consumes the supplier's bus stream and calls the buyer's webhook."""

import asyncio
import logging

import httpx

from order_relay.core.config import get_settings
from order_relay.core.logging import configure_logging
from order_relay.core.redis_backends import RedisDeadLetterSink, RedisStreamSubscription, redis_client
from order_relay.core.scheduler import install_signal_handlers
from order_relay.core.types import BusEvent
from order_relay.services.completion_relay.relay import CompletionRelay, RateLimiter, RelayTarget

_READ_BATCH = 50
_READ_BLOCK_MS = 1000
_MAX_IN_FLIGHT = 200
_RETRY_READ_S = 1.0
_PENDING_SWEEP_TICKS = 30

logger = logging.getLogger(__name__)


class RelayWorker:
    """Hands stream entries to the relay and acknowledges them once settled.

    An entry is acked only after the relay reached an outcome for it, delivered
    or dead-lettered. Entries whose processing raised stay in this consumer's
    pending list until ``recover_pending`` dispatches them again.
    """

    def __init__(
        self,
        relay: CompletionRelay,
        subscription: RedisStreamSubscription,
        max_in_flight: int = _MAX_IN_FLIGHT,
        read_batch: int = _READ_BATCH,
        block_ms: int | None = _READ_BLOCK_MS,
    ) -> None:
        self.relay = relay
        self.subscription = subscription
        self._read_batch = read_batch
        self._block_ms = block_ms
        self._slots = asyncio.Semaphore(max_in_flight)
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def recover_pending(self) -> int:
        """Dispatch every entry left in this consumer's pending list, page by page."""

        start_id = "0"
        dispatched = 0
        while True:
            entries = await self.subscription.read(count=self._read_batch, pending=True, start_id=start_id)
            if not entries:
                return dispatched
            start_id = entries[-1][0]
            dispatched += await self._dispatch(entries)

    async def poll_once(self) -> int:
        entries = await self.subscription.read(count=self._read_batch, block_ms=self._block_ms)
        return await self._dispatch(entries)

    async def drain(self) -> None:
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def _dispatch(self, entries: list[tuple[str, BusEvent | None]]) -> int:
        dispatched = 0
        for message_id, event in entries:
            if message_id in self._in_flight:
                continue
            if event is None or not self.relay.pattern.matches(event):
                await self.subscription.ack(message_id)
                continue
            await self._slots.acquire()
            task = asyncio.create_task(self._process(message_id, event))
            self._in_flight[message_id] = task
            task.add_done_callback(lambda _, message_id=message_id: self._in_flight.pop(message_id, None))
            dispatched += 1
        return dispatched

    async def _process(self, message_id: str, event: BusEvent) -> None:
        try:
            await self.relay.deliver(event)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "relay_process_failed",
                extra={"message_id": message_id, "event_id": event.id, "error": str(exc)},
                exc_info=True,
            )
        else:
            await self.subscription.ack(message_id)
        finally:
            self._slots.release()


async def _run() -> int:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    shutdown_event = asyncio.Event()

    missing = settings.missing("RELAY_ENDPOINT", "EVENT_BUS_NAME", "DEAD_LETTER_KEY")
    if missing:
        logger.error("relay_invalid_config", extra={"missing": missing})
        return 1
    target = RelayTarget.from_settings(settings)
    if "*" not in target.endpoint:
        logger.error("relay_invalid_endpoint", extra={"endpoint": target.endpoint})
        return 1

    install_signal_handlers(shutdown_event, logger)
    redis = redis_client(settings.REDIS_URL)
    subscription = RedisStreamSubscription(
        redis,
        stream=settings.EVENT_BUS_NAME,
        group=settings.RELAY_CONSUMER_GROUP,
        consumer=settings.RELAY_CONSUMER_NAME,
    )

    try:
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_S) as http:
            relay = CompletionRelay(
                target,
                http,
                RedisDeadLetterSink(redis, settings.DEAD_LETTER_KEY),
                limiter=RateLimiter(target.rate_limit_per_s),
            )
            worker = RelayWorker(relay, subscription)
            await subscription.ensure_group()
            logger.info(
                "relay_startup",
                extra={
                    "stream": settings.EVENT_BUS_NAME,
                    "group": settings.RELAY_CONSUMER_GROUP,
                    "endpoint": target.endpoint,
                    "rate_limit_per_s": target.rate_limit_per_s,
                    "max_attempts": target.max_attempts,
                    "max_event_age_s": target.max_event_age.total_seconds(),
                    "dead_letter": settings.DEAD_LETTER_KEY,
                },
            )

            recovered = await worker.recover_pending()
            if recovered:
                logger.info("relay_resumed_pending", extra={"count": recovered})

            ticks = 0
            while not shutdown_event.is_set():
                ticks += 1
                try:
                    if ticks % _PENDING_SWEEP_TICKS == 0:
                        recovered = await worker.recover_pending()
                        if recovered:
                            logger.info("relay_retried_pending", extra={"count": recovered})
                    await worker.poll_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    logger.warning("relay_read_failed", extra={"error": str(exc), "retry_in_s": _RETRY_READ_S})
                    try:
                        await asyncio.wait_for(shutdown_event.wait(), timeout=_RETRY_READ_S)
                    except asyncio.TimeoutError:
                        pass

            if worker.in_flight:
                logger.info("relay_draining", extra={"in_flight": worker.in_flight})
            await worker.drain()
    finally:
        await redis.aclose()

    logger.info("relay_shutdown")
    return 0


def main() -> int:
    """Run the relay worker until interrupted."""

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
