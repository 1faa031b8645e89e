"""Supplier-side scheduled sweep that completes submitted stock orders and announces them."""

import argparse
import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace

from order_relay.core.batch import raise_for_failures, run_batch
from order_relay.core.bus import EventBus
from order_relay.core.config import get_settings
from order_relay.core.logging import configure_logging, correlated
from order_relay.core.redis_backends import RedisRecordStore, RedisStreamEventBus, redis_client
from order_relay.core.scheduler import install_signal_handlers, run_every
from order_relay.core.stores import RecordStore
from order_relay.core.types import ORDER_COMPLETED, ORDER_SUBMITTED, StockOrder, completion_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SweepReport:
    """Outcome of one sweep run."""

    correlation_id: str
    selected: int
    completed: int
    events_published: int


async def sweep_once(stock_store: RecordStore, bus: EventBus) -> SweepReport:
    """Move every submitted stock order to completed, then publish one event per order.

    Writes are fanned out and joined before any event is published. A failed
    write or publish raises ``BatchPartialFailure`` once the whole batch has
    settled; records already written stay completed and are not selected again.
    """

    log = correlated(logger, "complete-order.sweep")
    log.info("sweep_started", extra={"table": stock_store.table})

    items = await stock_store.query("orderStatus", ORDER_SUBMITTED)
    pending = [StockOrder.from_item(item) for item in items if item.get("orderStatus") == ORDER_SUBMITTED]
    if not pending:
        log.info("sweep_completed", extra={"selected": 0, "completed": 0, "events_published": 0})
        return SweepReport(log.correlation_id, 0, 0, 0)

    async def _complete(order: StockOrder) -> StockOrder:
        updated = replace(order, orderStatus=ORDER_COMPLETED)
        log.info("sweep_record_update", extra={"stock_order_id": order.id, "car_order_id": order.carOrderId})
        await stock_store.put(updated.to_item())
        return updated

    log.info("sweep_updating_records", extra={"count": len(pending)})
    write_results = await run_batch(pending, _complete)
    try:
        raise_for_failures("update_stock_orders", write_results)
    except Exception:
        _log_batch_failures(log, "sweep_update_failed", write_results)
        raise
    completed = [result.value for result in write_results]

    async def _announce(order: StockOrder) -> str:
        event = completion_event(order, bus.name)
        log.info(
            "sweep_event_raise",
            extra={"event_id": event.id, "stock_order_id": order.id, "car_order_id": order.carOrderId},
        )
        return await bus.publish(event)

    log.info("sweep_raising_events", extra={"count": len(completed)})
    publish_results = await run_batch(completed, _announce)
    try:
        raise_for_failures("publish_completion_events", publish_results)
    except Exception:
        # the records are already completed; these events are lost for this cycle
        _log_batch_failures(log, "sweep_publish_failed", publish_results)
        raise

    report = SweepReport(
        correlation_id=log.correlation_id,
        selected=len(pending),
        completed=len(completed),
        events_published=len(publish_results),
    )
    log.info(
        "sweep_completed",
        extra={"selected": report.selected, "completed": report.completed, "events_published": report.events_published},
    )
    return report


def _log_batch_failures(log: logging.LoggerAdapter, message: str, results) -> None:
    for result in results:
        if result.ok:
            continue
        log.error(
            message,
            extra={"stock_order_id": result.item.id, "error": str(result.error), "error_type": type(result.error).__name__},
        )


async def _run(once: bool) -> int:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    missing = settings.missing("STOCK_TABLE", "EVENT_BUS_NAME")
    if missing:
        logger.error("sweep_invalid_config", extra={"missing": missing})
        return 1

    redis = redis_client(settings.REDIS_URL)
    stock_store = RedisRecordStore(redis, settings.STOCK_TABLE, indexed_attributes=("orderStatus",))
    bus = RedisStreamEventBus(redis, settings.EVENT_BUS_NAME)
    try:
        if once:
            try:
                await sweep_once(stock_store, bus)
            except Exception:  # noqa: BLE001
                logger.exception("sweep_run_failed")
                return 1
            return 0

        shutdown_event = asyncio.Event()
        install_signal_handlers(shutdown_event, logger)
        logger.info(
            "sweep_startup",
            extra={"interval_s": settings.SWEEP_INTERVAL_S, "table": settings.STOCK_TABLE, "bus": settings.EVENT_BUS_NAME},
        )
        runs, failures = await run_every(
            "sweep",
            settings.SWEEP_INTERVAL_S,
            lambda: sweep_once(stock_store, bus),
            shutdown_event,
            logger,
        )
        logger.info("sweep_shutdown", extra={"runs": runs, "failures": failures})
        return 0
    finally:
        await redis.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the sweep every ``SWEEP_INTERVAL_S`` seconds, or once with ``--once``."""

    parser = argparse.ArgumentParser(prog="order-relay-sweep")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args(argv)
    try:
        return asyncio.run(_run(args.once))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
