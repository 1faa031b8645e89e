"""Redis-backed record store, value slot, event bus and dead-letter sink.

Layout:
  records        HASH  <table>                      id -> JSON record
  status index   SET   <table>:idx:<attr>:<value>   ids with that attribute value
  token slot     STRING <slot name>                 JSON ``{"token": ...}``
  event bus      STREAM <bus name>                  field ``event`` -> JSON envelope
  dead letters   LIST  <dlq name>                   JSON ``{"event": ..., "attributes": ...}``
"""

import json
import logging
from typing import Any

import redis.asyncio as aioredis

from order_relay.core.bus import DeadLetter
from order_relay.core.errors import PreconditionFailure
from order_relay.core.types import BusEvent

logger = logging.getLogger(__name__)

_STREAM_MAXLEN = 10000

# ARGV: id, json, index prefix, indexed attribute names...
_PUT_SCRIPT = """
local old = redis.call('HGET', KEYS[1], ARGV[1])
local new = cjson.decode(ARGV[2])
local decoded_old = nil
if old then decoded_old = cjson.decode(old) end
for i = 4, #ARGV do
  local attr = ARGV[i]
  if decoded_old and decoded_old[attr] ~= nil then
    redis.call('SREM', ARGV[3] .. attr .. ':' .. tostring(decoded_old[attr]), ARGV[1])
  end
  if new[attr] ~= nil then
    redis.call('SADD', ARGV[3] .. attr .. ':' .. tostring(new[attr]), ARGV[1])
  end
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
return 1
"""

# ARGV: id, json changes, index prefix, indexed attribute names...
_UPDATE_IF_EXISTS_SCRIPT = """
local old = redis.call('HGET', KEYS[1], ARGV[1])
if not old then return false end
local record = cjson.decode(old)
local changes = cjson.decode(ARGV[2])
for i = 4, #ARGV do
  local attr = ARGV[i]
  if changes[attr] ~= nil and record[attr] ~= nil then
    redis.call('SREM', ARGV[3] .. attr .. ':' .. tostring(record[attr]), ARGV[1])
  end
end
for key, value in pairs(changes) do record[key] = value end
for i = 4, #ARGV do
  local attr = ARGV[i]
  if record[attr] ~= nil then
    redis.call('SADD', ARGV[3] .. attr .. ':' .. tostring(record[attr]), ARGV[1])
  end
end
local encoded = cjson.encode(record)
redis.call('HSET', KEYS[1], ARGV[1], encoded)
return encoded
"""


def redis_client(url: str) -> aioredis.Redis:
    return aioredis.from_url(url, decode_responses=True)


class RedisRecordStore:
    """Hash-per-table record store with optional secondary index sets."""

    def __init__(
        self,
        redis: aioredis.Redis,
        table: str,
        indexed_attributes: tuple[str, ...] = (),
    ) -> None:
        self.table = table
        self._redis = redis
        self._indexed = indexed_attributes
        self._index_prefix = f"{table}:idx:"
        self._put = redis.register_script(_PUT_SCRIPT)
        self._update = redis.register_script(_UPDATE_IF_EXISTS_SCRIPT)

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._redis.hget(self.table, key)
        return json.loads(raw) if raw is not None else None

    async def put(self, item: dict[str, Any]) -> None:
        await self._put(
            keys=[self.table],
            args=[str(item["id"]), json.dumps(item), self._index_prefix, *self._indexed],
        )

    async def update_if_exists(self, key: str, changes: dict[str, Any]) -> dict[str, Any]:
        encoded = await self._update(
            keys=[self.table],
            args=[key, json.dumps(changes), self._index_prefix, *self._indexed],
        )
        if not encoded:
            raise PreconditionFailure(self.table, key)
        return json.loads(encoded)

    async def scan(self) -> list[dict[str, Any]]:
        return [json.loads(raw) async for _, raw in self._redis.hscan_iter(self.table)]

    async def query(self, attribute: str, value: Any) -> list[dict[str, Any]]:
        if attribute not in self._indexed:
            return [item for item in await self.scan() if item.get(attribute) == value]

        ids = sorted(await self._redis.smembers(f"{self._index_prefix}{attribute}:{value}"))
        if not ids:
            return []
        raws = await self._redis.hmget(self.table, ids)
        items = [json.loads(raw) for raw in raws if raw is not None]
        # the index can briefly lag a concurrent overwrite
        return [item for item in items if item.get(attribute) == value]


class RedisValueSlot:
    def __init__(self, redis: aioredis.Redis, name: str) -> None:
        self.name = name
        self._redis = redis

    async def read(self) -> str | None:
        return await self._redis.get(self.name)

    async def write(self, value: str) -> None:
        await self._redis.set(self.name, value)


class RedisStreamEventBus:
    """Publishes event envelopes onto a Redis Stream named after the bus."""

    def __init__(self, redis: aioredis.Redis, name: str) -> None:
        self.name = name
        self._redis = redis

    async def publish(self, event: BusEvent) -> str:
        return await self._redis.xadd(
            self.name,
            {"event": json.dumps(event.to_dict())},
            maxlen=_STREAM_MAXLEN,
            approximate=True,
        )


class RedisStreamSubscription:
    """Consumer-group reader over the bus stream with explicit acknowledgement."""

    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str,
        group: str,
        consumer: str,
    ) -> None:
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self._redis = redis

    async def ensure_group(self) -> None:
        try:
            await self._redis.xgroup_create(name=self.stream, groupname=self.group, id="0", mkstream=True)
            logger.info("bus_consumer_group_created", extra={"stream": self.stream, "group": self.group})
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def read(
        self,
        count: int = 10,
        block_ms: int | None = 1000,
        pending: bool = False,
        start_id: str = "0",
    ) -> list[tuple[str, BusEvent | None]]:
        """Read new entries, or this consumer's unacknowledged ones after ``start_id`` when ``pending``.

        Entries that cannot be decoded come back as ``None`` so the caller can
        acknowledge and skip them without losing the rest of the batch.
        """

        response = await self._redis.xreadgroup(
            groupname=self.group,
            consumername=self.consumer,
            streams={self.stream: start_id if pending else ">"},
            count=count,
            block=None if pending else block_ms,
        )
        entries: list[tuple[str, BusEvent | None]] = []
        for _, messages in response or ():
            for message_id, fields in messages:
                entries.append((message_id, _decode_event(message_id, fields)))
        return entries

    async def ack(self, message_id: str) -> None:
        await self._redis.xack(self.stream, self.group, message_id)


def _decode_event(message_id: str, fields: dict[str, str] | None) -> BusEvent | None:
    raw = (fields or {}).get("event")
    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("bus_invalid_json_message", extra={"message_id": message_id})
        return None
    if not isinstance(payload, dict):
        logger.warning("bus_invalid_event_message", extra={"message_id": message_id})
        return None
    try:
        return BusEvent.from_dict(payload)
    except (ValueError, TypeError) as exc:
        logger.warning("bus_invalid_event_message", extra={"message_id": message_id, "error": str(exc)})
        return None


class RedisDeadLetterSink:
    def __init__(self, redis: aioredis.Redis, name: str) -> None:
        self.name = name
        self._redis = redis

    async def send(self, letter: DeadLetter) -> None:
        await self._redis.rpush(self.name, json.dumps(letter.to_dict()))
