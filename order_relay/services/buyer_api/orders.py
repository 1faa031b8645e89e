"""Buyer-side order ingestion and the completion webhook's conditional update."""

import logging
import uuid
from typing import Any

import httpx

from order_relay.core.errors import TokenUnavailable, UpstreamAuthUnavailable, UpstreamCallFailure
from order_relay.core.stores import RecordStore
from order_relay.core.tokens import TokenCache
from order_relay.core.types import ORDER_COMPLETED, Order


class SupplierClient:
    """Authenticated client for the supplier's stock order endpoint."""

    def __init__(self, base_url: str, api_key: str, http: httpx.AsyncClient) -> None:
        self._url = f"{base_url.rstrip('/')}/orders"
        self._api_key = api_key
        self._http = http

    async def create_stock_order(self, order: Order, token: str) -> dict[str, Any]:
        try:
            response = await self._http.post(
                self._url,
                json=order.to_item(),
                headers={"Authorization": f"Bearer {token}", "x-api-key": self._api_key},
            )
        except httpx.HTTPError as exc:
            raise UpstreamCallFailure(f"supplier unreachable: {type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            raise UpstreamCallFailure(
                f"supplier returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


class OrderService:
    def __init__(self, orders: RecordStore, tokens: TokenCache, supplier: SupplierClient) -> None:
        self._orders = orders
        self._tokens = tokens
        self._supplier = supplier

    async def create_order(self, payload: dict[str, Any], log: logging.LoggerAdapter) -> Order:
        """Persist a new order and ask the supplier for stock.

        The order record is written before the supplier call and is kept when
        that call fails; there is no retry at this layer.
        """

        order = Order(
            id=str(uuid.uuid4()),
            type=str(payload.get("type", "")),
            price=str(payload.get("price", "")),
        )
        log.info("order_id_generated", extra={"order_id": order.id})
        await self._orders.put(order.to_item())

        try:
            token = await self._tokens.get_token()
        except TokenUnavailable as exc:
            raise UpstreamAuthUnavailable(str(exc)) from exc

        stock_order = await self._supplier.create_stock_order(order, token)
        log.info(
            "order_stock_requested",
            extra={"order_id": order.id, "stock_order_id": stock_order.get("id")},
        )
        return order

    async def complete_order(self, order_id: str, body: bytes) -> dict[str, Any]:
        """Mark an existing order completed; missing orders raise ``PreconditionFailure``."""

        if not order_id.strip():
            raise ValueError("missing order id path parameter")
        if not body.strip():
            raise ValueError("missing request body")
        return await self._orders.update_if_exists(order_id, {"status": ORDER_COMPLETED})
