"""Fixed-interval job runner and shutdown signal wiring for the scheduled services."""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable

Job = Callable[[], Awaitable[object]]


def _request_shutdown(shutdown_event: asyncio.Event, logger: logging.Logger, signal_name: str) -> None:
    if shutdown_event.is_set():
        return
    logger.info("shutdown_signal", extra={"signal": signal_name})
    shutdown_event.set()


def install_signal_handlers(shutdown_event: asyncio.Event, logger: logging.Logger) -> None:
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, shutdown_event, logger, sig.name)
        except NotImplementedError:
            signal_name = sig.name
            signal.signal(
                sig,
                lambda *_, signal_name=signal_name: _request_shutdown(shutdown_event, logger, signal_name),
            )


async def run_every(
    name: str,
    interval_s: float,
    job: Job,
    shutdown_event: asyncio.Event,
    logger: logging.Logger,
    max_runs: int | None = None,
) -> tuple[int, int]:
    """Run ``job`` now and then every ``interval_s`` seconds until shutdown.

    A failing run is logged as ``<name>_run_failed`` with its traceback and the
    schedule continues with the next tick. Returns ``(runs, failures)``.
    """

    runs = 0
    failures = 0
    loop = asyncio.get_running_loop()

    while not shutdown_event.is_set():
        started = loop.time()
        runs += 1
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            failures += 1
            logger.error(
                f"{name}_run_failed",
                extra={"run": runs, "failures": failures, "error": str(exc)},
                exc_info=True,
            )

        if max_runs is not None and runs >= max_runs:
            break

        delay = max(0.0, interval_s - (loop.time() - started))
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    return runs, failures
