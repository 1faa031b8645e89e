"""Supplier (tire stock) API: accepts stock orders raised by the buyer domain."""

import base64
import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from hashlib import sha256

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from order_relay.core.config import Settings, get_settings
from order_relay.core.logging import configure_logging, correlated
from order_relay.core.redis_backends import RedisRecordStore, redis_client
from order_relay.core.stores import RecordStore
from order_relay.core.types import ORDER_SUBMITTED, StockOrder

logger = logging.getLogger(__name__)

_ERROR_BODY = {"message": "An error occurred"}


def _api_key_id(api_key: str) -> str:
    """Loggable identifier for an API key that does not reveal it."""

    return sha256(api_key.encode("utf-8")).hexdigest()[:12]


def _bearer_subject(token: str) -> str | None:
    """``sub`` claim of a JWT bearer token, for logging only; opaque tokens give ``None``.

    The signature is not checked; the value is only written to the log.
    """

    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        claims = json.loads(base64.urlsafe_b64decode(parts[1] + "=" * (-len(parts[1]) % 4)))
    except ValueError:
        return None
    subject = claims.get("sub") if isinstance(claims, dict) else None
    return str(subject) if subject is not None else None


def create_app(settings: Settings | None = None, stock: RecordStore | None = None) -> FastAPI:
    """Build the supplier API; the stock store defaults to Redis."""

    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    accepted_keys = settings.supplier_api_keys()

    redis = None
    if stock is None:
        redis = redis_client(settings.REDIS_URL)
        stock = RedisRecordStore(redis, settings.STOCK_TABLE, indexed_attributes=("orderStatus",))

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "supplier_api_startup",
            extra={"service": "supplier_api", "env": settings.ENV, "version": settings.VERSION, "table": stock.table},
        )
        yield
        if redis is not None:
            await redis.aclose()

    app = FastAPI(title=f"{settings.APP_NAME} (supplier)", version=settings.VERSION, lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Return process liveness status."""

        return {"status": "ok"}

    @app.post("/orders")
    async def create_stock_order(request: Request) -> Response:
        log = correlated(logger, "order-stock.handler")
        log.info("stock_order_started")

        authorization = request.headers.get("authorization", "")
        api_key = request.headers.get("x-api-key", "")
        if not authorization.lower().startswith("bearer ") or not authorization[7:].strip():
            log.warning("stock_order_unauthorized")
            return JSONResponse(status_code=401, content={"message": "Unauthorized"})
        if accepted_keys and api_key not in accepted_keys:
            log.warning("stock_order_forbidden", extra={"api_key_id": _api_key_id(api_key) if api_key else None})
            return JSONResponse(status_code=403, content={"message": "Forbidden"})
        log.info(
            "stock_order_caller",
            extra={
                "client_id": _bearer_subject(authorization[7:].strip()),
                "api_key_id": _api_key_id(api_key) if api_key else None,
            },
        )

        try:
            order = json.loads(await request.body())
            if not isinstance(order, dict) or not order.get("id"):
                raise ValueError("stock order request requires the car order id")

            stock_order = StockOrder(
                id=str(uuid.uuid4()),
                carOrderId=str(order["id"]),
                carType=str(order.get("type", "")),
                orderStatus=ORDER_SUBMITTED,
            )
            log.info("stock_order_id_generated", extra={"stock_order_id": stock_order.id, "car_order_id": stock_order.carOrderId})
            await stock.put(stock_order.to_item())
        except Exception as exc:  # noqa: BLE001
            log.error(
                "stock_order_failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            return JSONResponse(status_code=500, content=_ERROR_BODY)

        log.info("stock_order_completed", extra={"stock_order_id": stock_order.id})
        return JSONResponse(status_code=201, content=stock_order.to_item())

    return app


app = create_app()
