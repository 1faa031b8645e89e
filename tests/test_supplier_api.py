"""Supplier API: stock order creation behind bearer token and API key checks."""

import asyncio
import base64
import json
import logging

import pytest
from fastapi.testclient import TestClient

from order_relay.services.supplier_api.main import create_app

AUTH_HEADERS = {"Authorization": "Bearer issued-token", "x-api-key": "car-orders-key"}


@pytest.fixture
def client(settings, stock_store):
    with TestClient(create_app(settings, stock=stock_store)) as test_client:
        yield test_client


def test_stock_order_is_created_as_submitted(client, stock_store) -> None:
    response = client.post(
        "/orders",
        json={"id": "O1", "status": "submitted", "type": "Tesla Model 3", "price": "42000"},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["carOrderId"] == "O1"
    assert body["carType"] == "Tesla Model 3"
    assert body["orderStatus"] == "submitted"
    assert body["id"] != "O1"
    assert asyncio.run(stock_store.get(body["id"])) == body


def test_missing_bearer_token_is_rejected(client, stock_store) -> None:
    response = client.post("/orders", json={"id": "O1"}, headers={"x-api-key": "car-orders-key"})

    assert response.status_code == 401
    assert len(stock_store) == 0


def test_unknown_api_key_is_rejected(client, stock_store) -> None:
    response = client.post(
        "/orders",
        json={"id": "O1"},
        headers={"Authorization": "Bearer issued-token", "x-api-key": "wrong"},
    )

    assert response.status_code == 403
    assert len(stock_store) == 0


def test_request_without_car_order_id_fails(client, stock_store) -> None:
    response = client.post("/orders", json={"type": "Tesla Model 3"}, headers=AUTH_HEADERS)

    assert response.status_code == 500
    assert response.json() == {"message": "An error occurred"}
    assert len(stock_store) == 0


def _jwt(claims: dict) -> str:
    def _segment(payload: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()

    return f"{_segment({'alg': 'RS256'})}.{_segment(claims)}.signature"


@pytest.mark.parametrize(
    ("token", "client_id"),
    [
        (_jwt({"sub": "car-orders-client", "scope": "tires/create.order"}), "car-orders-client"),
        ("opaque-token", None),
        ("not.a-jwt.token", None),
    ],
)
def test_caller_is_logged_by_client_and_api_key_id(client, caplog, token, client_id) -> None:
    caplog.set_level(logging.INFO, logger="order_relay.services.supplier_api.main")

    response = client.post(
        "/orders",
        json={"id": "O1", "type": "Tesla Model 3"},
        headers={"Authorization": f"Bearer {token}", "x-api-key": "car-orders-key"},
    )

    assert response.status_code == 201
    (record,) = [record for record in caplog.records if record.getMessage() == "stock_order_caller"]
    assert record.client_id == client_id
    assert record.api_key_id != "car-orders-key"
    assert len(record.api_key_id) == 12
