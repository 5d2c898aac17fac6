"""Key-value storage for the local leads snapshot and job settings.

The snapshot holds Sharpspring lead dicts (system field names) keyed by
remote ID, with secondary index sets so leads can be found by source ID and
e-mail address without scanning, and offset/limit paging over all entries.

Redis layout (all keys job-scoped, see core.redis.job_key):
- {job}:leads               hash   remote ID -> lead JSON
- {job}:leads:ids           zset   remote IDs (score 0, lexical order) for paging
- {job}:leads:idx:{f}:{v}   set    remote IDs whose field f has value v
- {job}:settings:{name}     string job settings (e.g. last refresh timestamp)
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Iterable

import redis.asyncio as aioredis
import structlog

from src.sharpsync.core.redis import job_key

logger = structlog.get_logger(__name__)


def index_value(field: str, value: Any) -> str:
    """Normalize a field value for index lookups (e-mail is case-insensitive)."""
    if value is None:
        return ""
    normalized = str(value).strip()
    if field == "emailAddress":
        normalized = normalized.lower()
    return normalized


class LeadStore(ABC):
    """Abstract snapshot storage for Sharpspring lead dicts."""

    @abstractmethod
    async def get(self, remote_id: str) -> dict[str, Any] | None:
        """Return the stored lead with this remote ID."""
        ...

    @abstractmethod
    async def set(self, lead: dict[str, Any]) -> None:
        """Insert or replace a lead (must contain "id") and update indexes."""
        ...

    @abstractmethod
    async def find(self, field: str, value: Any) -> list[dict[str, Any]]:
        """Return stored leads whose indexed ``field`` equals ``value``."""
        ...

    @abstractmethod
    async def get_all_batched(self, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        """Return a page of stored leads, in stable order."""
        ...

    @abstractmethod
    async def clear(self) -> None:
        """Remove all stored leads."""
        ...


class SettingStore(ABC):
    """Abstract storage for per-job integer settings such as timestamps."""

    @abstractmethod
    async def get_int(self, name: str) -> int | None:
        ...

    @abstractmethod
    async def set_int(self, name: str, value: int) -> None:
        ...


# ── Redis implementations ──────────────────────────────────────────────────


class RedisLeadStore(LeadStore):
    """Redis-backed lead snapshot.

    Args:
        redis: Async Redis client (decode_responses=True).
        job_id: Job identifier used to scope all keys.
        indexed_fields: System field names to maintain index sets for.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        job_id: str,
        indexed_fields: Iterable[str],
    ) -> None:
        self._redis = redis
        self._job_id = job_id
        self._indexed_fields = tuple(indexed_fields)

    def _records_key(self) -> str:
        return job_key(self._job_id, "leads")

    def _ids_key(self) -> str:
        return job_key(self._job_id, "leads", "ids")

    def _index_key(self, field: str, value: str) -> str:
        return job_key(self._job_id, "leads", "idx", field, value)

    async def get(self, remote_id: str) -> dict[str, Any] | None:
        raw = await self._redis.hget(self._records_key(), str(remote_id))
        return json.loads(raw) if raw else None

    async def set(self, lead: dict[str, Any]) -> None:
        if not lead.get("id"):
            raise ValueError("Cannot store a lead without 'id'")
        remote_id = str(lead["id"])
        previous = await self.get(remote_id)

        async with self._redis.pipeline(transaction=True) as pipe:
            for field in self._indexed_fields:
                new_value = index_value(field, lead.get(field))
                old_value = index_value(field, previous.get(field)) if previous else ""
                if old_value and old_value != new_value:
                    pipe.srem(self._index_key(field, old_value), remote_id)
                if new_value:
                    pipe.sadd(self._index_key(field, new_value), remote_id)
            pipe.hset(self._records_key(), remote_id, json.dumps(lead))
            pipe.zadd(self._ids_key(), {remote_id: 0})
            await pipe.execute()

    async def find(self, field: str, value: Any) -> list[dict[str, Any]]:
        if field not in self._indexed_fields:
            raise ValueError(f"Field '{field}' is not indexed")
        normalized = index_value(field, value)
        if not normalized:
            return []
        remote_ids = sorted(await self._redis.smembers(self._index_key(field, normalized)))
        if not remote_ids:
            return []
        raw_leads = await self._redis.hmget(self._records_key(), remote_ids)
        return [json.loads(raw) for raw in raw_leads if raw]

    async def get_all_batched(self, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        remote_ids = await self._redis.zrange(self._ids_key(), offset, offset + limit - 1)
        if not remote_ids:
            return []
        raw_leads = await self._redis.hmget(self._records_key(), remote_ids)
        return [json.loads(raw) for raw in raw_leads if raw]

    async def clear(self) -> None:
        deleted = 0
        async for key in self._redis.scan_iter(match=job_key(self._job_id, "leads") + "*"):
            deleted += await self._redis.delete(key)
        logger.info("lead_store.cleared", job_id=self._job_id, keys_deleted=deleted)


class RedisSettingStore(SettingStore):
    """Redis-backed job settings."""

    def __init__(self, redis: aioredis.Redis, job_id: str) -> None:
        self._redis = redis
        self._job_id = job_id

    def _key(self, name: str) -> str:
        return job_key(self._job_id, "settings", name)

    async def get_int(self, name: str) -> int | None:
        raw = await self._redis.get(self._key(name))
        return int(raw) if raw else None

    async def set_int(self, name: str, value: int) -> None:
        await self._redis.set(self._key(name), str(value))


# ── In-memory implementations ──────────────────────────────────────────────
# Used for one-off dry runs (scripts/run_sync.py --memory-cache) and tests.


class InMemoryLeadStore(LeadStore):
    """Dict-backed lead snapshot with the same semantics as RedisLeadStore."""

    def __init__(self, indexed_fields: Iterable[str]) -> None:
        self._indexed_fields = tuple(indexed_fields)
        self._leads: dict[str, dict[str, Any]] = {}

    async def get(self, remote_id: str) -> dict[str, Any] | None:
        lead = self._leads.get(str(remote_id))
        return dict(lead) if lead else None

    async def set(self, lead: dict[str, Any]) -> None:
        if not lead.get("id"):
            raise ValueError("Cannot store a lead without 'id'")
        self._leads[str(lead["id"])] = dict(lead)

    async def find(self, field: str, value: Any) -> list[dict[str, Any]]:
        if field not in self._indexed_fields:
            raise ValueError(f"Field '{field}' is not indexed")
        normalized = index_value(field, value)
        if not normalized:
            return []
        return [
            dict(self._leads[remote_id])
            for remote_id in sorted(self._leads)
            if index_value(field, self._leads[remote_id].get(field)) == normalized
        ]

    async def get_all_batched(self, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        return [dict(self._leads[remote_id]) for remote_id in sorted(self._leads)[offset:offset + limit]]

    async def clear(self) -> None:
        self._leads.clear()


class InMemorySettingStore(SettingStore):
    def __init__(self) -> None:
        self._values: dict[str, int] = {}

    async def get_int(self, name: str) -> int | None:
        return self._values.get(name)

    async def set_int(self, name: str, value: int) -> None:
        self._values[name] = value
