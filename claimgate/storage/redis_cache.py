from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

NONCE_KEY_PREFIX = "svc:nonce"


def _nonce_key(client_id: str, nonce: str) -> str:
    return f"{NONCE_KEY_PREFIX}:{client_id}:{nonce}"


def _client_options(socket_timeout: float) -> dict:
    return {
        "decode_responses": True,
        "socket_timeout": socket_timeout,
        "socket_connect_timeout": socket_timeout,
    }


class RedisCache:
    """Shared nonce ledger for enhanced service auth, visible to every worker.

    A nonce key lives only as long as its request timestamp is still inside
    the acceptance window; after that the timestamp check rejects the replay.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(redis_url, **_client_options(socket_timeout))

    def verify_connection(self) -> None:
        # Ping from a throwaway sync client so the async pool is not bound to the startup loop.
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def remember_nonce(self, client_id: str, nonce: str, ttl_seconds: int) -> bool:
        """``True`` the first time a (client, nonce) pair is seen inside its TTL."""
        stored = await self.client.set(
            _nonce_key(client_id, nonce), "1", nx=True, ex=max(1, int(ttl_seconds))
        )
        return bool(stored)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Blocking-client twin of :class:`RedisCache` for TEST_MODE.

    Keeps the awaitable interface, but no connection outlives the event loop
    of the test that opened it.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(redis_url, **_client_options(socket_timeout))

    def verify_connection(self) -> None:
        self.client.ping()

    async def remember_nonce(self, client_id: str, nonce: str, ttl_seconds: int) -> bool:
        stored = self.client.set(
            _nonce_key(client_id, nonce), "1", nx=True, ex=max(1, int(ttl_seconds))
        )
        return bool(stored)

    async def close(self) -> None:
        self.client.close()
