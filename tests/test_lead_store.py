"""Unit tests for the lead snapshot stores.

The in-memory stores are tested directly; RedisLeadStore is tested against a
mocked async Redis client to check key layout and index maintenance.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.sharpsync.core.redis import job_key
from src.sharpsync.leads.store import (
    InMemoryLeadStore,
    InMemorySettingStore,
    RedisLeadStore,
    RedisSettingStore,
    index_value,
)
from tests.fakes import SRC, remote_lead


class TestIndexValue:
    def test_email_is_case_insensitive(self):
        assert index_value("emailAddress", " Ada@Example.COM ") == "ada@example.com"

    def test_other_fields_keep_case(self):
        assert index_value(SRC, "AbC") == "AbC"

    def test_none_is_empty(self):
        assert index_value(SRC, None) == ""


class TestInMemoryLeadStore:
    """Dict-backed store used for dry runs and tests."""

    async def test_set_and_get(self, lead_store):
        await lead_store.set(remote_lead(1, "42", "ada@example.com"))
        lead = await lead_store.get("1")
        assert lead["emailAddress"] == "ada@example.com"

    async def test_set_requires_id(self, lead_store):
        with pytest.raises(ValueError, match="without 'id'"):
            await lead_store.set({"emailAddress": "ada@example.com"})

    async def test_find_by_email_ignores_case(self, lead_store):
        await lead_store.set(remote_lead(1, "42", "Ada@Example.com"))
        found = await lead_store.find("emailAddress", "ada@example.COM")
        assert [lead["id"] for lead in found] == ["1"]

    async def test_find_returns_all_duplicates(self, lead_store):
        await lead_store.set(remote_lead(2, "42", "b@example.com"))
        await lead_store.set(remote_lead(1, "42", "a@example.com"))
        found = await lead_store.find(SRC, "42")
        assert [lead["id"] for lead in found] == ["1", "2"]

    async def test_find_after_replace_uses_new_value(self, lead_store):
        await lead_store.set(remote_lead(1, "42", "old@example.com"))
        await lead_store.set(remote_lead(1, "42", "new@example.com"))
        assert await lead_store.find("emailAddress", "old@example.com") == []
        assert len(await lead_store.find("emailAddress", "new@example.com")) == 1

    async def test_find_rejects_unindexed_field(self, lead_store):
        with pytest.raises(ValueError, match="not indexed"):
            await lead_store.find("firstName", "Ada")

    async def test_get_all_batched_pages(self, lead_store):
        for remote_id in (3, 1, 2):
            await lead_store.set(remote_lead(remote_id, str(remote_id), f"{remote_id}@example.com"))
        first = await lead_store.get_all_batched(2, 0)
        second = await lead_store.get_all_batched(2, 2)
        assert [lead["id"] for lead in first] == ["1", "2"]
        assert [lead["id"] for lead in second] == ["3"]

    async def test_clear(self, lead_store):
        await lead_store.set(remote_lead(1, "42", "ada@example.com"))
        await lead_store.clear()
        assert await lead_store.get("1") is None
        assert await lead_store.get_all_batched(10) == []


class TestInMemorySettingStore:
    async def test_get_missing_and_set(self):
        store = InMemorySettingStore()
        assert await store.get_int("ts_kvupdate") is None
        await store.set_int("ts_kvupdate", 1700000000)
        assert await store.get_int("ts_kvupdate") == 1700000000


# ── Redis ──────────────────────────────────────────────────────────────────


def _mock_redis() -> MagicMock:
    redis = MagicMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    redis.hget = AsyncMock(return_value=None)
    redis.hmget = AsyncMock(return_value=[])
    redis.smembers = AsyncMock(return_value=set())
    redis.zrange = AsyncMock(return_value=[])
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    redis.pipeline.return_value.__aenter__.return_value = pipe
    redis.pipe = pipe
    return redis


class TestRedisLeadStore:
    """Key layout and index maintenance against a mocked Redis client."""

    async def test_set_new_lead_adds_indexes(self):
        redis = _mock_redis()
        store = RedisLeadStore(redis, "job1", (SRC, "emailAddress"))
        lead = remote_lead(1, "42", "Ada@Example.com")

        await store.set(lead)

        pipe = redis.pipe
        pipe.sadd.assert_any_call(job_key("job1", "leads", "idx", SRC, "42"), "1")
        pipe.sadd.assert_any_call(
            job_key("job1", "leads", "idx", "emailAddress", "ada@example.com"), "1"
        )
        pipe.srem.assert_not_called()
        pipe.hset.assert_called_once_with(job_key("job1", "leads"), "1", json.dumps(lead))
        pipe.zadd.assert_called_once_with(job_key("job1", "leads", "ids"), {"1": 0})
        pipe.execute.assert_awaited_once()

    async def test_set_changed_email_moves_index_entry(self):
        redis = _mock_redis()
        redis.hget.return_value = json.dumps(remote_lead(1, "42", "old@example.com"))
        store = RedisLeadStore(redis, "job1", (SRC, "emailAddress"))

        await store.set(remote_lead(1, "42", "new@example.com"))

        redis.pipe.srem.assert_called_once_with(
            job_key("job1", "leads", "idx", "emailAddress", "old@example.com"), "1"
        )

    async def test_find_reads_index_then_records(self):
        redis = _mock_redis()
        redis.smembers.return_value = {"2", "1"}
        redis.hmget.return_value = [
            json.dumps(remote_lead(1, "42", "a@example.com")),
            json.dumps(remote_lead(2, "42", "b@example.com")),
        ]
        store = RedisLeadStore(redis, "job1", (SRC, "emailAddress"))

        found = await store.find(SRC, "42")

        redis.smembers.assert_awaited_once_with(job_key("job1", "leads", "idx", SRC, "42"))
        redis.hmget.assert_awaited_once_with(job_key("job1", "leads"), ["1", "2"])
        assert [lead["id"] for lead in found] == ["1", "2"]

    async def test_get_all_batched_uses_sorted_ids(self):
        redis = _mock_redis()
        redis.zrange.return_value = ["5"]
        redis.hmget.return_value = [json.dumps(remote_lead(5, "9", "e@example.com"))]
        store = RedisLeadStore(redis, "job1", (SRC, "emailAddress"))

        page = await store.get_all_batched(10, 20)

        redis.zrange.assert_awaited_once_with(job_key("job1", "leads", "ids"), 20, 29)
        assert page[0]["id"] == "5"


class TestRedisSettingStore:
    async def test_round_trip_through_string_values(self):
        redis = _mock_redis()
        store = RedisSettingStore(redis, "job1")

        await store.set_int("ts_kvupdate", 1700000000)
        redis.set.assert_awaited_once_with(job_key("job1", "settings", "ts_kvupdate"), "1700000000")

        redis.get.return_value = "1700000000"
        assert await store.get_int("ts_kvupdate") == 1700000000
