from __future__ import annotations

import hashlib
import json
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

USER_PROFILE_PREFIX = "user:"
BLACKLIST_PREFIX = "blacklist:"
DIRECTORY_PREFIX = "users:"
RATE_LIMIT_PREFIX = "rate:"


def directory_key(page: int, limit: int, search: str) -> str:
    return f"{DIRECTORY_PREFIX}{page}:{limit}:{search}"


class CacheOperations:
    """Session-cache operations written against an async key-value ``client``.

    Subclasses only provide ``client`` (``get``/``set``/``delete``/``exists``/
    ``incr``/``expire``/``ttl``/``scan_iter``) plus ``verify_connection`` and ``close``.
    """

    client: Any

    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.client.get(key)
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            return None

    async def set_json(self, key: str, payload: Any, ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(payload), ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def delete_by_prefix(self, prefix: str) -> int:
        removed = 0
        async for key in self.client.scan_iter(match=f"{prefix}*"):
            await self.client.delete(key)
            removed += 1
        return removed

    async def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.get_json(f"{USER_PROFILE_PREFIX}{user_id}")

    async def cache_user_profile(
        self, user_id: str, profile: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.set_json(f"{USER_PROFILE_PREFIX}{user_id}", profile, ttl_seconds)

    async def evict_user_profile(self, user_id: str) -> None:
        await self.client.delete(f"{USER_PROFILE_PREFIX}{user_id}")

    async def blacklist_access_token(self, access_token: str, ttl_seconds: int) -> None:
        """Deny an access token until it would have expired anyway."""
        if ttl_seconds > 0:
            await self.client.set(f"{BLACKLIST_PREFIX}{access_token}", "1", ex=ttl_seconds)

    async def is_access_token_blacklisted(self, access_token: str) -> bool:
        return bool(await self.client.exists(f"{BLACKLIST_PREFIX}{access_token}"))

    async def get_directory_page(
        self, page: int, limit: int, search: str
    ) -> Optional[Dict[str, Any]]:
        return await self.get_json(directory_key(page, limit, search))

    async def cache_directory_page(
        self, page: int, limit: int, search: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.set_json(directory_key(page, limit, search), payload, ttl_seconds)

    async def invalidate_directory(self) -> int:
        return await self.delete_by_prefix(DIRECTORY_PREFIX)

    @staticmethod
    def _rate_key(key: str) -> str:
        # hashed so client-supplied parts cannot collide across scopes
        return f"{RATE_LIMIT_PREFIX}{hashlib.sha256(key.encode()).hexdigest()[:32]}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Fixed-window counter. Returns ``(allowed, remaining, reset_seconds)``.

        The window starts with the first request and every request inside it
        counts, rejected ones included.
        """
        safe_key = self._rate_key(key)
        count = int(await self.client.incr(safe_key))
        if count == 1:
            await self.client.expire(safe_key, window_seconds)
            reset_seconds = window_seconds
        else:
            ttl = int(await self.client.ttl(safe_key))
            if ttl < 0:
                # counter lost its expiry; restart the window
                await self.client.expire(safe_key, window_seconds)
                ttl = window_seconds
            reset_seconds = ttl
        return count <= limit, max(0, limit - count), reset_seconds


class RedisCache(CacheOperations):
    """Thin Redis wrapper for profile snapshots, blacklists and directory pages."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def incr(self, key: str) -> int:
        return self._sync.incr(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return self._sync.expire(key, seconds)

    async def ttl(self, key: str) -> int:
        return self._sync.ttl(key)

    async def scan_iter(self, match: Optional[str] = None) -> AsyncIterator[str]:
        for key in self._sync.scan_iter(match=match):
            yield key


class SyncRedisCache(CacheOperations):
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same async methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()
