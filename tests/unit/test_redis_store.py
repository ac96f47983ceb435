from __future__ import annotations

import fnmatch
from collections.abc import AsyncIterator

import orjson
import pytest

from maskproxy.storage.redis_store import RedisMappingStore, StoredSession


class FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, int | None] = {}

    async def set(self, key: str, value: bytes, ex: int | None = None) -> bool:
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str, count: int = 10) -> AsyncIterator[str]:
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key


@pytest.mark.asyncio
async def test_session_record_keeps_contexts_and_ttl_together() -> None:
    redis = FakeRedis()
    store = RedisMappingStore(redis)  # type: ignore[arg-type]
    contexts = {"pii": {"mapping": {"<PERSON_1>": "Ann"}, "counters": {"PERSON": 1}}, "secrets": {}}

    await store.save_session("s1", contexts, ttl_seconds=60)

    assert redis.ttls["mp:session:s1"] == 60
    assert orjson.loads(redis.data["mp:session:s1"]) == {"contexts": contexts, "ttl_seconds": 60}
    assert await store.load_session("s1") == StoredSession(contexts=contexts, ttl_seconds=60)
    assert await store.load_session("missing") is None


@pytest.mark.asyncio
async def test_stream_pending_is_dropped_when_nothing_is_held() -> None:
    redis = FakeRedis()
    store = RedisMappingStore(redis)  # type: ignore[arg-type]

    await store.save_stream_pending("s1", "a", {"pii": "<PE", "secrets": ""}, ttl_seconds=30)

    assert redis.ttls["mp:stream:s1:a"] == 30
    assert await store.load_stream_pending("s1", "a") == {"pii": "<PE", "secrets": ""}

    await store.save_stream_pending("s1", "a", {"pii": "", "secrets": ""}, ttl_seconds=30)

    assert "mp:stream:s1:a" not in redis.data
    assert await store.load_stream_pending("s1", "a") == {}


@pytest.mark.asyncio
async def test_delete_session_removes_its_streams_only() -> None:
    redis = FakeRedis()
    store = RedisMappingStore(redis)  # type: ignore[arg-type]
    await store.save_session("s1", {}, ttl_seconds=10)
    await store.save_stream_pending("s1", "a", {"pii": "<PE"}, ttl_seconds=10)
    await store.save_stream_pending("s1", "b", {"secrets": "[["}, ttl_seconds=10)
    await store.save_stream_pending("s2", "a", {"pii": "["}, ttl_seconds=10)

    assert await store.delete_session("s1") is True
    assert await store.delete_session("s1") is False

    assert await store.load_session("s1") is None
    assert await store.load_stream_pending("s1", "a") == {}
    assert await store.load_stream_pending("s1", "b") == {}
    assert await store.load_stream_pending("s2", "a") == {"pii": "["}


@pytest.mark.asyncio
async def test_key_prefix() -> None:
    redis = FakeRedis()
    store = RedisMappingStore(redis, key_prefix="t")  # type: ignore[arg-type]

    await store.save_session("x", {}, ttl_seconds=5)
    await store.save_stream_pending("x", "main", {"pii": "<"}, ttl_seconds=5)

    assert sorted(redis.data) == ["t:session:x", "t:stream:x:main"]
