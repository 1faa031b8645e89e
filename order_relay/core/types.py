"""Shared record and event types exchanged between the buyer and supplier domains."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from order_relay.core.time_utils import isoformat_z, parse_iso, utc_now

ORDER_SUBMITTED = "submitted"
ORDER_COMPLETED = "completed"
STOCK_ORDER_STATUSES = (ORDER_SUBMITTED, ORDER_COMPLETED)

COMPLETION_SOURCE = "complete-order"
COMPLETION_DETAIL_TYPE = "OrderCompleted"


@dataclass(frozen=True, slots=True)
class Order:
    """Buyer-side car order."""

    id: str
    type: str
    price: str
    status: str = ORDER_SUBMITTED

    def to_item(self) -> dict[str, Any]:
        return {"id": self.id, "status": self.status, "type": self.type, "price": self.price}


@dataclass(frozen=True, slots=True)
class StockOrder:
    """Supplier-side tire order raised for a car order."""

    id: str
    carOrderId: str
    carType: str
    orderStatus: str = ORDER_SUBMITTED

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "StockOrder":
        return cls(
            id=str(item["id"]),
            carOrderId=str(item.get("carOrderId", "")),
            carType=str(item.get("carType", "")),
            orderStatus=str(item.get("orderStatus", ORDER_SUBMITTED)),
        )

    def to_item(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "carOrderId": self.carOrderId,
            "carType": self.carType,
            "orderStatus": self.orderStatus,
        }


@dataclass(frozen=True, slots=True)
class CachedToken:
    """Bearer token as held in the durable slot and the process-local cache."""

    value: str
    scope: tuple[str, ...] = ()
    issued_at: datetime | None = None
    expires_in_s: int | None = None

    @property
    def expires_at(self) -> datetime | None:
        if self.issued_at is None or self.expires_in_s is None:
            return None
        return self.issued_at + timedelta(seconds=self.expires_in_s)

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and now >= expires_at

    def to_slot(self) -> dict[str, Any]:
        """Serialize for the durable slot; ``token`` stays the primary key."""

        payload: dict[str, Any] = {"token": self.value, "scope": list(self.scope)}
        if self.issued_at is not None:
            payload["issuedAt"] = isoformat_z(self.issued_at)
        if self.expires_in_s is not None:
            payload["expiresIn"] = self.expires_in_s
        return payload

    @classmethod
    def from_slot(cls, payload: dict[str, Any]) -> "CachedToken":
        issued_raw = payload.get("issuedAt")
        expires_raw = payload.get("expiresIn")
        return cls(
            value=str(payload["token"]),
            scope=tuple(str(scope) for scope in payload.get("scope") or ()),
            issued_at=parse_iso(issued_raw) if isinstance(issued_raw, str) else None,
            expires_in_s=int(expires_raw) if expires_raw is not None else None,
        )


@dataclass(frozen=True, slots=True)
class BusEvent:
    """Event envelope as carried on the supplier's event bus."""

    source: str
    detail_type: str
    detail: dict[str, Any]
    bus_name: str = "default"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    time: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "detail-type": self.detail_type,
            "time": isoformat_z(self.time),
            "event-bus-name": self.bus_name,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BusEvent":
        time_raw = payload.get("time")
        return cls(
            id=str(payload.get("id") or uuid.uuid4()),
            source=str(payload.get("source", "")),
            detail_type=str(payload.get("detail-type", "")),
            detail=dict(payload.get("detail") or {}),
            bus_name=str(payload.get("event-bus-name", "default")),
            time=parse_iso(time_raw) if isinstance(time_raw, str) else utc_now(),
        )


def completion_event(stock_order: StockOrder, bus_name: str) -> BusEvent:
    """Build the ``OrderCompleted`` event for a completed stock order."""

    return BusEvent(
        source=COMPLETION_SOURCE,
        detail_type=COMPLETION_DETAIL_TYPE,
        detail=stock_order.to_item(),
        bus_name=bus_name,
    )
