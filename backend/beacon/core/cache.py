"""Redis-backed keyed store with per-entry expiry.

Every worker process talks to the same Redis, so a key set by one instance is
visible to all of them.
"""
from __future__ import annotations

import redis.asyncio as redis

from beacon.core.config import settings


def create_redis_client(url: str | None = None) -> redis.Redis:
    # from_url does not connect; the pool opens on first command
    return redis.from_url(url or settings.redis_url, encoding="utf-8", decode_responses=True)


class RedisCache:
    def __init__(self, client: redis.Redis, prefix: str = "beacon:", ttl_seconds: float = 0) -> None:
        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _ttl_ms(self, ttl: float | None) -> int:
        return int((self.ttl_seconds if ttl is None else ttl) * 1000)

    async def add(self, key: str, value: str = "1", ttl: float | None = None) -> bool:
        """SET NX with expiry. True when this caller stored the key.

        A non-positive ttl stores nothing and always answers True.
        """
        ms = self._ttl_ms(ttl)
        if ms <= 0:
            return True
        return bool(await self.client.set(self._make_key(key), value, nx=True, px=ms))

    async def delete(self, key: str) -> bool:
        return await self.client.delete(self._make_key(key)) > 0

    async def exists(self, key: str) -> bool:
        return await self.client.exists(self._make_key(key)) > 0
