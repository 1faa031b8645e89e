"""Token cache, identity client and refresher behaviour."""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from order_relay.core.errors import AuthError, ConfigurationError, TokenUnavailable, UpstreamCallFailure
from order_relay.core.scheduler import run_every
from order_relay.core.stores import InMemoryValueSlot
from order_relay.core.tokens import IdentityClient, TokenCache, TokenRefresher
from order_relay.services.token_refresher.main import build_refresher, refresh_once

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _token_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"access_token": "issued-token", "expires_in": 3600, "token_type": "Bearer", "scope": "tires/create.order"},
    )


def _refresher(transport, slot: InMemoryValueSlot) -> TokenRefresher:
    return TokenRefresher(
        identity=IdentityClient("https://auth.test", transport.client()),
        slot=slot,
        client_id="orders-client",
        client_secret="orders-secret",
        scopes=("tires/create.order",),
        clock=lambda: NOW,
    )


@pytest.mark.asyncio
async def test_get_token_fails_when_slot_never_populated(empty_token_slot) -> None:
    cache = TokenCache(empty_token_slot)

    with pytest.raises(TokenUnavailable):
        await cache.get_token()
    assert cache.cached is None


@pytest.mark.asyncio
async def test_placeholder_slot_value_counts_as_unpopulated() -> None:
    cache = TokenCache(InMemoryValueSlot("slot", json.dumps({"token": "none"})))

    with pytest.raises(TokenUnavailable):
        await cache.get_token()


@pytest.mark.asyncio
async def test_get_token_reads_slot_once_then_serves_local_copy(token_slot) -> None:
    """The durable slot is only read on a cold cache."""

    cache = TokenCache(token_slot)

    assert await cache.get_token() == "slot-token"
    assert await cache.get_token() == "slot-token"
    assert token_slot.reads == 1


@pytest.mark.asyncio
async def test_concurrent_cold_start_reads_slot_once(token_slot) -> None:
    cache = TokenCache(token_slot)

    tokens = await asyncio.gather(*(cache.get_token() for _ in range(50)))

    assert set(tokens) == {"slot-token"}
    assert token_slot.reads == 1


@pytest.mark.asyncio
async def test_new_process_starts_with_empty_local_cache(token_slot) -> None:
    first = TokenCache(token_slot)
    await first.get_token()

    second = TokenCache(token_slot)
    assert second.cached is None
    assert await second.get_token() == "slot-token"
    assert token_slot.reads == 2


@pytest.mark.asyncio
async def test_expired_local_copy_is_replaced_from_slot() -> None:
    """An expired local token is re-read from the slot, never re-issued."""

    now = {"value": NOW - timedelta(minutes=30)}
    slot = InMemoryValueSlot(
        "slot",
        json.dumps({"token": "old", "issuedAt": "2024-05-01T11:00:00Z", "expiresIn": 3600}),
    )
    cache = TokenCache(slot, clock=lambda: now["value"])
    assert await cache.get_token() == "old"

    await slot.write(json.dumps({"token": "new", "issuedAt": "2024-05-01T12:00:00Z", "expiresIn": 3600}))
    now["value"] = NOW + timedelta(minutes=1)

    assert await cache.get_token() == "new"
    assert slot.reads == 2


@pytest.mark.asyncio
async def test_refresh_overwrites_slot(recording_transport, empty_token_slot) -> None:
    transport = recording_transport(_token_response)

    token = await _refresher(transport, empty_token_slot).refresh()

    assert token.value == "issued-token"
    stored = empty_token_slot.read_json()
    assert stored["token"] == "issued-token"
    assert stored["scope"] == ["tires/create.order"]
    assert stored["issuedAt"] == "2024-05-01T12:00:00Z"
    assert stored["expiresIn"] == 3600

    request = transport.requests[0]
    assert request.url == "https://auth.test/oauth2/token"
    assert request.headers["authorization"].startswith("Basic ")
    form = request.content.decode()
    assert "grant_type=client_credentials" in form
    assert "scope=tires%2Fcreate.order" in form


@pytest.mark.asyncio
async def test_rejected_credentials_raise_auth_error_and_keep_previous_token(recording_transport, token_slot) -> None:
    transport = recording_transport(lambda request: httpx.Response(400, json={"error": "invalid_client"}))

    with pytest.raises(AuthError, match="invalid_client"):
        await _refresher(transport, token_slot).refresh()

    assert token_slot.writes == 0
    assert await TokenCache(token_slot).get_token() == "slot-token"


@pytest.mark.asyncio
async def test_missing_granted_scope_is_an_auth_error(recording_transport, empty_token_slot) -> None:
    transport = recording_transport(
        lambda request: httpx.Response(200, json={"access_token": "t", "scope": "tires/cancel.order"})
    )

    with pytest.raises(AuthError, match="tires/create.order"):
        await _refresher(transport, empty_token_slot).refresh()
    assert empty_token_slot.writes == 0


@pytest.mark.asyncio
async def test_identity_provider_outage_is_an_upstream_failure(recording_transport, empty_token_slot) -> None:
    transport = recording_transport(lambda request: httpx.Response(503))

    with pytest.raises(UpstreamCallFailure):
        await _refresher(transport, empty_token_slot).refresh()


@pytest.mark.asyncio
async def test_consumers_never_trigger_token_issuance(recording_transport, empty_token_slot) -> None:
    """Only scheduled refreshes reach the identity provider."""

    transport = recording_transport(_token_response)
    refresher = _refresher(transport, empty_token_slot)
    await refresher.refresh()

    caches = [TokenCache(empty_token_slot, clock=lambda: NOW) for _ in range(5)]
    await asyncio.gather(*(cache.get_token() for cache in caches for _ in range(20)))

    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_refresh_once_propagates_failures(recording_transport, empty_token_slot) -> None:
    transport = recording_transport(lambda request: httpx.Response(401))

    with pytest.raises(AuthError):
        await refresh_once(_refresher(transport, empty_token_slot))


def test_build_refresher_requires_credentials(settings, empty_token_slot) -> None:
    incomplete = settings.model_copy(update={"ORDERS_CLIENT_SECRET": "", "AUTH_URL": ""})

    with pytest.raises(ConfigurationError) as excinfo:
        build_refresher(incomplete, httpx.AsyncClient(), empty_token_slot)
    assert excinfo.value.missing == ["AUTH_URL", "ORDERS_CLIENT_SECRET"]


@pytest.mark.asyncio
async def test_scheduler_keeps_running_after_a_failed_refresh(recording_transport, empty_token_slot) -> None:
    """A failed cycle is logged and the next tick still refreshes."""

    responses = iter([httpx.Response(401), _token_response(None)])
    transport = recording_transport(lambda request: next(responses))
    refresher = _refresher(transport, empty_token_slot)

    runs, failures = await run_every(
        "token_refresh",
        0.0,
        lambda: refresh_once(refresher),
        asyncio.Event(),
        logging.getLogger("test"),
        max_runs=2,
    )

    assert (runs, failures) == (2, 1)
    assert empty_token_slot.read_json()["token"] == "issued-token"
