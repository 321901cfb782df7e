from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from kintai_auth.storage.errors import BackendUnavailable


class RedisBackend:
    """Async durable key/value store for login intent, backed by Redis."""

    DEFAULT_KEY_PREFIX = "kintai:login:"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        client: Any = None,
    ):
        self.name = "redis:durable"
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        # Explicit timeouts so a dead Redis degrades into BackendUnavailable quickly
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before relying on this backend."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(self._key(key))
        except (RedisError, OSError) as exc:
            raise BackendUnavailable(
                "redis get failed", backend=self.name, detail={"error": str(exc)}
            ) from exc

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.client.set(self._key(key), value, ex=ttl_seconds)
        except (RedisError, OSError) as exc:
            raise BackendUnavailable(
                "redis set failed", backend=self.name, detail={"error": str(exc)}
            ) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except (RedisError, OSError) as exc:
            raise BackendUnavailable(
                "redis delete failed", backend=self.name, detail={"error": str(exc)}
            ) from exc

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisBackend"]
