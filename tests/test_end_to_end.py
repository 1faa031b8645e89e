"""Full workflow: buyer order, supplier stock order, sweep, relay, buyer webhook."""

import httpx
import pytest

from order_relay.core.bus import InMemoryEventBus
from order_relay.core.stores import InMemoryValueSlot
from order_relay.core.tokens import TokenCache
from order_relay.core.types import StockOrder, completion_event
from order_relay.services.buyer_api.main import create_app as create_buyer_app
from order_relay.services.buyer_api.orders import SupplierClient
from order_relay.services.completion_relay.relay import CompletionRelay, RelayTarget
from order_relay.services.fulfillment_sweep.main import sweep_once
from order_relay.services.supplier_api.main import create_app as create_supplier_app


@pytest.fixture
def workflow(settings, order_store, stock_store, token_slot, dead_letters):
    supplier_app = create_supplier_app(settings, stock=stock_store)
    supplier_http = httpx.AsyncClient(transport=httpx.ASGITransport(app=supplier_app))
    supplier = SupplierClient("http://supplier.test", settings.SUPPLIER_API_KEY, supplier_http)

    buyer_app = create_buyer_app(settings, orders=order_store, tokens=TokenCache(token_slot), supplier=supplier)
    buyer_http = httpx.AsyncClient(transport=httpx.ASGITransport(app=buyer_app), base_url="http://buyer.test")

    relay_http = httpx.AsyncClient(transport=httpx.ASGITransport(app=buyer_app))
    relay = CompletionRelay(RelayTarget.from_settings(settings), relay_http, dead_letters)

    bus = InMemoryEventBus(settings.EVENT_BUS_NAME)
    bus.subscribe(relay.pattern, relay.handle)
    return buyer_http, bus


@pytest.mark.asyncio
async def test_order_is_completed_after_one_sweep(workflow, order_store, stock_store, dead_letters) -> None:
    buyer_http, bus = workflow

    response = await buyer_http.post("/orders", json={"type": "Tesla Model 3", "price": "42000"})
    assert response.status_code == 201
    order_id = response.json()["id"]

    (stock_item,) = await stock_store.scan()
    assert stock_item["carOrderId"] == order_id
    assert stock_item["orderStatus"] == "submitted"
    assert (await order_store.get(order_id))["status"] == "submitted"

    report = await sweep_once(stock_store, bus)

    assert report.events_published == 1
    assert (await stock_store.get(stock_item["id"]))["orderStatus"] == "completed"
    assert (await order_store.get(order_id))["status"] == "completed"
    assert dead_letters.letters == []


@pytest.mark.asyncio
async def test_duplicate_completion_events_leave_the_order_completed(workflow, order_store, dead_letters) -> None:
    _, bus = workflow
    await order_store.put({"id": "O1", "status": "submitted", "type": "Tesla Model 3", "price": "1"})
    event = completion_event(
        StockOrder(id="S1", carOrderId="O1", carType="Tesla Model 3", orderStatus="completed"),
        bus.name,
    )

    await bus.publish(event)
    await bus.publish(event)

    assert await order_store.get("O1") == {"id": "O1", "status": "completed", "type": "Tesla Model 3", "price": "1"}
    assert dead_letters.letters == []


@pytest.mark.asyncio
async def test_completion_for_unknown_order_is_dead_lettered(settings, order_store, dead_letters) -> None:
    """The webhook fails for an order the buyer never stored; retries end in the dead-letter sink."""

    buyer_app = create_buyer_app(
        settings,
        orders=order_store,
        tokens=TokenCache(InMemoryValueSlot("unused")),
        supplier=SupplierClient("http://supplier.test", "", httpx.AsyncClient()),
    )
    sleeps: list[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    target = RelayTarget.from_settings(settings)
    relay = CompletionRelay(
        RelayTarget(endpoint=target.endpoint, headers=target.headers, max_attempts=3),
        httpx.AsyncClient(transport=httpx.ASGITransport(app=buyer_app)),
        dead_letters,
        sleep=_sleep,
    )
    event = completion_event(
        StockOrder(id="S9", carOrderId="missing", carType="Tesla Model 3", orderStatus="completed"),
        settings.EVENT_BUS_NAME,
    )

    outcome = await relay.handle(event)

    assert outcome.dead_letter_reason == "retry_budget"
    assert outcome.attempts == 3
    assert len(sleeps) == 2
    assert dead_letters.letters[0].event["detail"]["carOrderId"] == "missing"
    assert await order_store.get("missing") is None
