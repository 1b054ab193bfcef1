from typing import Protocol

import redis.asyncio as aioredis

from budgetsync.core.config import settings

# Shared async Redis client (created once, reused across requests)
_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


# ─── Short-lived OAuth state ───────────────────────────────────────────────────

class StateStore(Protocol):
    """Key-value store with per-key expiry, used for the connect → callback round trip."""

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> None: ...


_STATE_PREFIX = "revolut_oauth_state:"


class RedisStateStore:
    def __init__(self, client: aioredis.Redis | None = None):
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        return self._client or get_redis()

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.setex(f"{_STATE_PREFIX}{key}", ttl_seconds, value)

    async def get(self, key: str) -> str | None:
        return await self.client.get(f"{_STATE_PREFIX}{key}")

    async def delete(self, key: str) -> None:
        await self.client.delete(f"{_STATE_PREFIX}{key}")


def get_state_store() -> StateStore:
    return RedisStateStore()
