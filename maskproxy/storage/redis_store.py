from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import orjson
from redis.asyncio import Redis


@dataclass(slots=True)
class StoredSession:
    contexts: dict[str, Any] = field(default_factory=dict)
    ttl_seconds: int = 0


class RedisMappingStore:
    """Conversation ledgers and the held-back tails of their output streams.

    A session record keeps the PII and secret ledgers together with the TTL
    they were saved under; stream tails written later reuse that TTL so they
    never outlive their ledger.
    """

    def __init__(self, redis_client: Redis, key_prefix: str = "mp") -> None:
        self._redis = redis_client
        self._key_prefix = key_prefix

    def _session_key(self, session_id: str) -> str:
        return f"{self._key_prefix}:session:{session_id}"

    def _stream_key(self, session_id: str, stream_id: str) -> str:
        return f"{self._key_prefix}:stream:{session_id}:{stream_id}"

    async def save_session(self, session_id: str, contexts: dict[str, Any], ttl_seconds: int) -> None:
        record = {"contexts": contexts, "ttl_seconds": int(ttl_seconds)}
        await self._redis.set(self._session_key(session_id), orjson.dumps(record), ex=int(ttl_seconds))

    async def load_session(self, session_id: str) -> StoredSession | None:
        raw = await self._redis.get(self._session_key(session_id))
        if raw is None:
            return None
        record = orjson.loads(raw)
        return StoredSession(contexts=dict(record.get("contexts", {})), ttl_seconds=int(record.get("ttl_seconds", 0)))

    async def save_stream_pending(
        self,
        session_id: str,
        stream_id: str,
        pending: dict[str, str],
        ttl_seconds: int,
    ) -> None:
        key = self._stream_key(session_id, stream_id)
        # Nothing held back: drop the key instead of storing empty tails.
        if not any(pending.values()):
            await self._redis.delete(key)
            return
        await self._redis.set(key, orjson.dumps(pending), ex=int(ttl_seconds))

    async def load_stream_pending(self, session_id: str, stream_id: str) -> dict[str, str]:
        raw = await self._redis.get(self._stream_key(session_id, stream_id))
        if raw is None:
            return {}
        return {str(layer): str(tail) for layer, tail in orjson.loads(raw).items()}

    async def delete_stream(self, session_id: str, stream_id: str) -> None:
        await self._redis.delete(self._stream_key(session_id, stream_id))

    async def delete_session(self, session_id: str) -> bool:
        """Drop the ledger and every stream tail of the session. True if the ledger existed."""
        existed = int(await self._redis.delete(self._session_key(session_id)))
        pattern = self._stream_key(session_id, "*")
        stream_keys = [key async for key in self._redis.scan_iter(match=pattern, count=1000)]
        if stream_keys:
            await self._redis.delete(*stream_keys)
        return existed > 0
