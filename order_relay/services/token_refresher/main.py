"""Scheduled job that issues the order-stock token and publishes it to the durable slot."""

import argparse
import asyncio
import logging
from collections.abc import Sequence

import httpx

from order_relay.core.config import Settings, get_settings
from order_relay.core.errors import ConfigurationError
from order_relay.core.logging import configure_logging, correlated
from order_relay.core.redis_backends import RedisValueSlot, redis_client
from order_relay.core.scheduler import install_signal_handlers, run_every
from order_relay.core.tokens import IdentityClient, TokenRefresher

_REQUIRED = ("TOKEN_SLOT_KEY", "AUTH_URL", "ORDERS_CLIENT_ID", "ORDERS_CLIENT_SECRET", "ORDER_STOCK_SCOPE")

logger = logging.getLogger(__name__)


async def refresh_once(refresher: TokenRefresher) -> None:
    """Run one refresh cycle; errors propagate to the scheduler."""

    log = correlated(logger, "token-refresher.refresh")
    log.info("token_refresh_started")
    try:
        token = await refresher.refresh()
    except Exception as exc:
        log.error("token_refresh_failed", extra={"error": str(exc), "error_type": type(exc).__name__})
        raise
    log.info(
        "token_refresh_completed",
        extra={"scope": list(token.scope), "expires_in_s": token.expires_in_s},
    )


def build_refresher(settings: Settings, http: httpx.AsyncClient, slot) -> TokenRefresher:
    missing = settings.missing(*_REQUIRED)
    if missing:
        raise ConfigurationError(missing)
    return TokenRefresher(
        identity=IdentityClient(settings.AUTH_URL, http),
        slot=slot,
        client_id=settings.ORDERS_CLIENT_ID,
        client_secret=settings.ORDERS_CLIENT_SECRET,
        scopes=settings.token_scopes(),
    )


async def _run(once: bool) -> int:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    redis = redis_client(settings.REDIS_URL)
    try:
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_S) as http:
            try:
                refresher = build_refresher(settings, http, RedisValueSlot(redis, settings.TOKEN_SLOT_KEY))
            except ConfigurationError as exc:
                logger.error("token_refresher_invalid_config", extra={"missing": exc.missing})
                return 1

            if once:
                try:
                    await refresh_once(refresher)
                except Exception:  # noqa: BLE001
                    return 1
                return 0

            shutdown_event = asyncio.Event()
            install_signal_handlers(shutdown_event, logger)
            logger.info(
                "token_refresher_startup",
                extra={
                    "interval_s": settings.TOKEN_REFRESH_INTERVAL_S,
                    "slot": settings.TOKEN_SLOT_KEY,
                    "scope": list(settings.token_scopes()),
                },
            )
            runs, failures = await run_every(
                "token_refresh",
                settings.TOKEN_REFRESH_INTERVAL_S,
                lambda: refresh_once(refresher),
                shutdown_event,
                logger,
            )
            logger.info("token_refresher_shutdown", extra={"runs": runs, "failures": failures})
            return 0
    finally:
        await redis.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Refresh the token on a fixed interval, or once with ``--once``."""

    parser = argparse.ArgumentParser(prog="order-relay-token-refresher")
    parser.add_argument("--once", action="store_true", help="run a single refresh and exit")
    args = parser.parse_args(argv)
    try:
        return asyncio.run(_run(args.once))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
