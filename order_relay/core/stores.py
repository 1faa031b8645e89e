"""Record store and value slot interfaces with in-memory implementations."""

import copy
import json
from typing import Any, Protocol

from order_relay.core.errors import PreconditionFailure


class RecordStore(Protocol):
    """Durable map of JSON records keyed by ``id``."""

    table: str

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def put(self, item: dict[str, Any]) -> None:
        """Write ``item`` unconditionally, replacing any existing record."""
        ...

    async def update_if_exists(self, key: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge ``changes`` into an existing record or raise ``PreconditionFailure``."""
        ...

    async def scan(self) -> list[dict[str, Any]]: ...

    async def query(self, attribute: str, value: Any) -> list[dict[str, Any]]:
        """Return every record whose ``attribute`` equals ``value``."""
        ...


class ValueSlot(Protocol):
    """A single named string value (the shared token parameter)."""

    name: str

    async def read(self) -> str | None: ...

    async def write(self, value: str) -> None: ...


class InMemoryRecordStore:
    """Process-local record store used by tests and single-process runs."""

    def __init__(self, table: str, items: list[dict[str, Any]] | None = None) -> None:
        self.table = table
        self._items: dict[str, dict[str, Any]] = {}
        self.put_count = 0
        for item in items or ():
            self._items[str(item["id"])] = copy.deepcopy(item)

    async def get(self, key: str) -> dict[str, Any] | None:
        item = self._items.get(key)
        return copy.deepcopy(item) if item is not None else None

    async def put(self, item: dict[str, Any]) -> None:
        self.put_count += 1
        self._items[str(item["id"])] = copy.deepcopy(item)

    async def update_if_exists(self, key: str, changes: dict[str, Any]) -> dict[str, Any]:
        existing = self._items.get(key)
        if existing is None:
            raise PreconditionFailure(self.table, key)
        existing.update(copy.deepcopy(changes))
        return copy.deepcopy(existing)

    async def scan(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(item) for item in self._items.values()]

    async def query(self, attribute: str, value: Any) -> list[dict[str, Any]]:
        # full scan and filter; O(table size) per call
        return [item for item in await self.scan() if item.get(attribute) == value]

    def __len__(self) -> int:
        return len(self._items)


class InMemoryValueSlot:
    """Process-local value slot."""

    def __init__(self, name: str, value: str | None = None) -> None:
        self.name = name
        self._value = value
        self.reads = 0
        self.writes = 0

    async def read(self) -> str | None:
        self.reads += 1
        return self._value

    async def write(self, value: str) -> None:
        self.writes += 1
        self._value = value

    def read_json(self) -> dict[str, Any] | None:
        return json.loads(self._value) if self._value is not None else None
