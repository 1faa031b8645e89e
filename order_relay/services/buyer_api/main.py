"""Buyer (car orders) API: order creation and the order-completed webhook."""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from order_relay.core.config import Settings, get_settings
from order_relay.core.logging import configure_logging, correlated
from order_relay.core.redis_backends import RedisRecordStore, RedisValueSlot, redis_client
from order_relay.core.stores import RecordStore
from order_relay.core.tokens import TokenCache
from order_relay.services.buyer_api.orders import OrderService, SupplierClient

logger = logging.getLogger(__name__)

_ERROR_BODY = {"message": "An error occurred"}


def _failure() -> JSONResponse:
    return JSONResponse(status_code=500, content=_ERROR_BODY)


def create_app(
    settings: Settings | None = None,
    orders: RecordStore | None = None,
    tokens: TokenCache | None = None,
    supplier: SupplierClient | None = None,
) -> FastAPI:
    """Build the buyer API; collaborators not given are wired from settings."""

    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    redis = None
    if orders is None or tokens is None:
        redis = redis_client(settings.REDIS_URL)
    if orders is None:
        orders = RedisRecordStore(redis, settings.ORDERS_TABLE)
    if tokens is None:
        tokens = TokenCache(RedisValueSlot(redis, settings.TOKEN_SLOT_KEY))

    http = None
    if supplier is None:
        http = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_S)
        supplier = SupplierClient(settings.SUPPLIER_API_URL, settings.SUPPLIER_API_KEY, http)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "buyer_api_startup",
            extra={"service": "buyer_api", "env": settings.ENV, "version": settings.VERSION, "table": orders.table},
        )
        yield
        if http is not None:
            await http.aclose()
        if redis is not None:
            await redis.aclose()

    app = FastAPI(title=f"{settings.APP_NAME} (buyer)", version=settings.VERSION, lifespan=lifespan)
    app.state.orders = OrderService(orders, tokens, supplier)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Return process liveness status."""

        return {"status": "ok"}

    @app.post("/orders")
    async def create_order(request: Request) -> Response:
        log = correlated(logger, "order-stock.handler")
        log.info("create_order_started")
        try:
            payload = json.loads(await request.body() or b"{}")
            if not isinstance(payload, dict):
                raise ValueError("order request must be a JSON object")
            order = await request.app.state.orders.create_order(payload, log)
        except Exception as exc:  # noqa: BLE001
            log.error(
                "create_order_failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            return _failure()

        log.info("create_order_completed", extra={"order_id": order.id})
        return JSONResponse(status_code=201, content={"id": order.id})

    @app.patch("/orders/{order_id}")
    async def order_completed_webhook(order_id: str, request: Request) -> Response:
        log = correlated(logger, "order-confirmed-webhook.handler")
        log.info("order_completed_webhook_started", extra={"order_id": order_id})
        try:
            await request.app.state.orders.complete_order(order_id, await request.body())
        except Exception as exc:  # noqa: BLE001
            log.error(
                "order_completed_webhook_failed",
                extra={"order_id": order_id, "error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            return _failure()

        log.info("order_completed_webhook_completed", extra={"order_id": order_id})
        return Response(status_code=204)

    return app


app = create_app()
