"""Shared fixtures: settings and in-memory collaborators for every service."""

import json
from collections.abc import Callable

import fakeredis
import httpx
import pytest

from order_relay.core.bus import InMemoryDeadLetterSink, InMemoryEventBus
from order_relay.core.config import Settings
from order_relay.core.stores import InMemoryRecordStore, InMemoryValueSlot

TOKEN_SLOT = "/car-orders/order-stock-token"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        LOG_LEVEL="WARNING",
        SUPPLIER_API_URL="http://supplier.test",
        SUPPLIER_API_KEY="car-orders-key",
        SUPPLIER_ACCEPTED_API_KEYS="car-orders-key",
        AUTH_URL="https://auth.test",
        ORDERS_CLIENT_ID="orders-client",
        ORDERS_CLIENT_SECRET="orders-secret",
        ORDER_STOCK_SCOPE="tires/create.order",
        RELAY_ENDPOINT="http://buyer.test/orders/*",
        RELAY_API_KEY="relay-key",
        RELAY_BACKOFF_BASE_S=0.0,
    )


@pytest.fixture
def order_store() -> InMemoryRecordStore:
    return InMemoryRecordStore("CarOrders")


@pytest.fixture
def stock_store() -> InMemoryRecordStore:
    return InMemoryRecordStore("StockOrders")


@pytest.fixture
def token_slot() -> InMemoryValueSlot:
    return InMemoryValueSlot(TOKEN_SLOT, json.dumps({"token": "slot-token"}))


@pytest.fixture
def empty_token_slot() -> InMemoryValueSlot:
    return InMemoryValueSlot(TOKEN_SLOT)


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus("orders-event-bus")


@pytest.fixture
def dead_letters() -> InMemoryDeadLetterSink:
    return InMemoryDeadLetterSink()


@pytest.fixture
def redis() -> fakeredis.FakeAsyncRedis:
    """Isolated in-process Redis with Lua scripting for the production backends."""

    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


class RecordingTransport:
    """httpx mock transport that records requests and replays scripted responses."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def recording_transport() -> Callable[[Callable[[httpx.Request], httpx.Response]], RecordingTransport]:
    return RecordingTransport
