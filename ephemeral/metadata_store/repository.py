"""Hub metadata store: Redis backend plus an in-memory backend for tests/dev.

Redis layout per hub:
  hub:{id}          JSON {id, created_at, expires_at}; its TTL is authoritative
  hub:{id}:text     text bin
  hub:{id}:files    list of FileEntry JSON
  hub:{id}:paths    list of PathData JSON
  hubs:expiry       sorted set id -> expiry epoch (store clock), for blob cleanup;
                    only written while a sweeper drains it

Every mutation is a Lua script: it checks the meta key, writes, and copies the
meta key's remaining TTL onto the secondary key, all in one atomic step.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

import redis.asyncio as aioredis
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from ephemeral.common.errors import HubAlreadyExists, HubNotFound, StoreUnavailable
from ephemeral.hubs.models import FileEntry, HubRecord, PathData
from ephemeral.config import runtime_config

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXPIRY_INDEX_KEY = "hubs:expiry"

_CREATE_LUA = """
if not redis.call('SET', KEYS[1], ARGV[1], 'NX', 'PX', ARGV[3]) then
  return 0
end
redis.call('SET', KEYS[2], ARGV[2], 'PX', ARGV[3])
if ARGV[5] == '1' then
  local now = redis.call('TIME')
  local deadline = tonumber(now[1]) + math.ceil(tonumber(ARGV[3]) / 1000)
  redis.call('ZADD', KEYS[3], deadline, ARGV[4])
end
return 1
"""

_SET_TEXT_LUA = """
local ttl = redis.call('PTTL', KEYS[1])
if ttl == -2 then
  return 0
end
if ttl > 0 then
  redis.call('SET', KEYS[2], ARGV[1], 'PX', ttl)
else
  redis.call('SET', KEYS[2], ARGV[1])
end
return 1
"""

_APPEND_LUA = """
local ttl = redis.call('PTTL', KEYS[1])
if ttl == -2 then
  return 0
end
local size = redis.call('RPUSH', KEYS[2], ARGV[1])
if ttl > 0 then
  redis.call('PEXPIRE', KEYS[2], ttl)
end
return size
"""

# Claims expired ids for blob cleanup. Removing them from the index is the
# claim, so concurrent sweepers on other instances never get the same id.
_CLAIM_EXPIRED_LUA = """
local now = redis.call('TIME')
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', now[1], 'LIMIT', 0, tonumber(ARGV[1]))
local claimed = {}
for _, id in ipairs(ids) do
  if redis.call('EXISTS', ARGV[2] .. id) == 0 then
    redis.call('ZREM', KEYS[1], id)
    table.insert(claimed, id)
  end
end
return claimed
"""


def meta_key(hub_id: str) -> str:
    return f"hub:{hub_id}"


def text_key(hub_id: str) -> str:
    return f"hub:{hub_id}:text"


def files_key(hub_id: str) -> str:
    return f"hub:{hub_id}:files"


def paths_key(hub_id: str) -> str:
    return f"hub:{hub_id}:paths"


class MetadataStore(Protocol):
    """Protocol for hub metadata backends."""

    async def create(
        self, hub_id: str, initial_text: str, ttl_seconds: int, index_expiry: bool = True
    ) -> HubRecord:
        """Create the record; raise HubAlreadyExists instead of overwriting.

        With `index_expiry` off the hub never enters the expiry index, so
        nothing accumulates there when no sweeper is running.
        """
        ...

    async def get(self, hub_id: str) -> HubRecord:
        """Return the live record or raise HubNotFound."""
        ...

    async def update_text(self, hub_id: str, text: str) -> None:
        ...

    async def append_file_entry(self, hub_id: str, entry: FileEntry) -> None:
        ...

    async def append_path(self, hub_id: str, path: PathData) -> None:
        ...

    async def claim_expired(self, limit: int = 100) -> List[str]:
        """Return ids whose metadata expired and whose blobs need reclaiming."""
        ...

    async def requeue_expired(self, hub_id: str) -> None:
        """Put a claimed id back when its cleanup failed."""
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


def _meta_payload(hub_id: str, ttl_seconds: int, now: datetime) -> Dict[str, str]:
    return {
        "id": hub_id,
        "created_at": now.isoformat(),
        "expires_at": (now + timedelta(seconds=ttl_seconds)).isoformat(),
    }


class RedisMetadataStore:
    """Redis-backed metadata store.

    Transient connection failures are retried by redis-py's own Retry policy;
    once it gives up, the failure surfaces as StoreUnavailable.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
        retry_attempts: int = 3,
    ) -> None:
        if client is None:
            client = aioredis.Redis.from_url(
                url or runtime_config.get_redis_url(),
                decode_responses=True,
                retry=Retry(ExponentialBackoff(cap=1.0, base=0.05), retry_attempts),
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
            )
        self._redis = client
        self._create_script = client.register_script(_CREATE_LUA)
        self._set_text_script = client.register_script(_SET_TEXT_LUA)
        self._append_script = client.register_script(_APPEND_LUA)
        self._claim_script = client.register_script(_CLAIM_EXPIRED_LUA)

    @property
    def client(self) -> aioredis.Redis:
        return self._redis

    async def _call(self, op: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        except RedisError as exc:
            logger.warning("Metadata store %s failed: %s", op, exc.__class__.__name__)
            raise StoreUnavailable() from exc

    async def create(
        self, hub_id: str, initial_text: str, ttl_seconds: int, index_expiry: bool = True
    ) -> HubRecord:
        now = datetime.now(timezone.utc)
        meta = _meta_payload(hub_id, ttl_seconds, now)
        created = await self._call(
            "create",
            lambda: self._create_script(
                keys=[meta_key(hub_id), text_key(hub_id), EXPIRY_INDEX_KEY],
                args=[json.dumps(meta), initial_text, ttl_seconds * 1000, hub_id, "1" if index_expiry else "0"],
            ),
        )
        if not int(created):
            raise HubAlreadyExists(details={"hub_id": hub_id})
        return HubRecord(
            id=hub_id,
            content=initial_text,
            created_at=meta["created_at"],
            expires_at=meta["expires_at"],
        )

    async def get(self, hub_id: str) -> HubRecord:
        async def _read():
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.get(meta_key(hub_id))
                pipe.get(text_key(hub_id))
                pipe.lrange(files_key(hub_id), 0, -1)
                pipe.lrange(paths_key(hub_id), 0, -1)
                return await pipe.execute()

        raw_meta, text, raw_files, raw_paths = await self._call("get", _read)
        if raw_meta is None:
            raise HubNotFound()
        meta = json.loads(raw_meta)
        return HubRecord(
            id=meta["id"],
            content=text or "",
            created_at=meta["created_at"],
            expires_at=meta["expires_at"],
            files=[FileEntry.model_validate_json(item) for item in raw_files or []],
            paths=[PathData.model_validate_json(item) for item in raw_paths or []],
        )

    async def update_text(self, hub_id: str, text: str) -> None:
        updated = await self._call(
            "update_text",
            lambda: self._set_text_script(keys=[meta_key(hub_id), text_key(hub_id)], args=[text]),
        )
        if not int(updated):
            raise HubNotFound()

    async def _append(self, op: str, hub_id: str, list_key: str, payload: str) -> None:
        size = await self._call(
            op,
            lambda: self._append_script(keys=[meta_key(hub_id), list_key], args=[payload]),
        )
        if not int(size):
            raise HubNotFound()

    async def append_file_entry(self, hub_id: str, entry: FileEntry) -> None:
        await self._append("append_file_entry", hub_id, files_key(hub_id), entry.model_dump_json())

    async def append_path(self, hub_id: str, path: PathData) -> None:
        await self._append("append_path", hub_id, paths_key(hub_id), path.model_dump_json())

    async def claim_expired(self, limit: int = 100) -> List[str]:
        claimed = await self._call(
            "claim_expired",
            lambda: self._claim_script(keys=[EXPIRY_INDEX_KEY], args=[limit, "hub:"]),
        )
        return list(claimed or [])

    async def requeue_expired(self, hub_id: str) -> None:
        await self._call("requeue_expired", lambda: self._redis.zadd(EXPIRY_INDEX_KEY, {hub_id: int(time.time())}))

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._redis.aclose()


@dataclass
class _MemoryEntry:
    record: HubRecord
    deadline: float


class InMemoryMetadataStore:
    """Process-local store for tests and single-instance development.

    `clock` returns seconds; expiry is checked against it on every access.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, _MemoryEntry] = {}
        self._expiry_index: Dict[str, float] = {}

    def _live(self, hub_id: str) -> _MemoryEntry:
        entry = self._entries.get(hub_id)
        if entry is None:
            raise HubNotFound()
        if self._clock() >= entry.deadline:
            del self._entries[hub_id]
            raise HubNotFound()
        return entry

    async def create(
        self, hub_id: str, initial_text: str, ttl_seconds: int, index_expiry: bool = True
    ) -> HubRecord:
        try:
            self._live(hub_id)
        except HubNotFound:
            pass
        else:
            raise HubAlreadyExists(details={"hub_id": hub_id})
        now = datetime.now(timezone.utc)
        meta = _meta_payload(hub_id, ttl_seconds, now)
        record = HubRecord(
            id=hub_id,
            content=initial_text,
            created_at=meta["created_at"],
            expires_at=meta["expires_at"],
        )
        deadline = self._clock() + ttl_seconds
        self._entries[hub_id] = _MemoryEntry(record=record, deadline=deadline)
        if index_expiry:
            self._expiry_index[hub_id] = deadline
        return record.model_copy(deep=True)

    async def get(self, hub_id: str) -> HubRecord:
        return self._live(hub_id).record.model_copy(deep=True)

    async def update_text(self, hub_id: str, text: str) -> None:
        self._live(hub_id).record.content = text

    async def append_file_entry(self, hub_id: str, entry: FileEntry) -> None:
        self._live(hub_id).record.files.append(entry)

    async def append_path(self, hub_id: str, path: PathData) -> None:
        self._live(hub_id).record.paths.append(path)

    async def claim_expired(self, limit: int = 100) -> List[str]:
        now = self._clock()
        claimed: List[str] = []
        for hub_id, deadline in sorted(self._expiry_index.items(), key=lambda item: item[1]):
            if len(claimed) >= limit or deadline > now:
                break
            self._entries.pop(hub_id, None)
            claimed.append(hub_id)
        for hub_id in claimed:
            del self._expiry_index[hub_id]
        return claimed

    async def requeue_expired(self, hub_id: str) -> None:
        self._expiry_index[hub_id] = self._clock()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
