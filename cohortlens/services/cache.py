"""
Redis-backed analysis cache.

Full analysis results are cached per group for an hour so that
near-simultaneous requests read a recent result instead of recomputing.
Values are stored as JSON.

Redis being down is never an error for the caller: reads miss, writes
report False, pattern deletes report 0.
"""

import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from cohortlens.config import settings

logger = structlog.get_logger(__name__)

R = TypeVar("R")

_shared_client = None


async def get_redis():
    """Shared redis.asyncio client, connected on first use; None if unreachable."""
    global _shared_client
    if _shared_client is not None:
        return _shared_client

    import redis.asyncio as aioredis

    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=3,
    )
    try:
        await client.ping()
    except Exception as e:
        logger.warning("redis_unavailable", url=settings.redis_url.rsplit("@", 1)[-1], error=str(e))
        await client.aclose()
        return None
    logger.info("redis_connected")
    _shared_client = client
    return client


async def close_redis() -> None:
    global _shared_client
    if _shared_client is not None:
        await _shared_client.aclose()
        _shared_client = None


class AnalysisCache:
    """get / set-with-TTL / delete-by-pattern over a redis.asyncio client."""

    def __init__(self, client=None, prefix: Optional[str] = None):
        self._client = client
        self.prefix = prefix or settings.cache_prefix

    async def _degrading(
        self,
        event: str,
        fallback: R,
        op: Callable[[Any], Awaitable[R]],
        **context,
    ) -> R:
        try:
            if self._client is None:
                self._client = await get_redis()
            if self._client is None:
                return fallback
            return await op(self._client)
        except Exception as e:
            logger.warning(event, error=str(e), **context)
            return fallback

    async def get(self, key: str) -> Optional[Any]:
        async def op(client):
            raw = await client.get(key)
            return json.loads(raw) if raw else None

        return await self._degrading("cache_get_failed", None, op, key=key)

    async def set(self, key: str, value: Any, ttl_seconds: int = 300) -> bool:
        payload = json.dumps(value, ensure_ascii=False, default=str)

        async def op(client):
            await client.set(key, payload, ex=ttl_seconds)
            return True

        return await self._degrading("cache_set_failed", False, op, key=key)

    async def delete_pattern(self, pattern: str) -> int:
        async def op(client):
            keys = [key async for key in client.scan_iter(match=pattern)]
            return await client.delete(*keys) if keys else 0

        return await self._degrading("cache_delete_failed", 0, op, pattern=pattern)

    async def ping(self) -> bool:
        async def op(client):
            return bool(await client.ping())

        return await self._degrading("cache_ping_failed", False, op)

    # ── Keys ─────────────────────────────────────────────────────────────

    def analysis_key(self, group_id: str) -> str:
        return f"{self.prefix}:group:analysis:{group_id}"

    def group_pattern(self, group_id: str) -> str:
        """Every cached entry for one group, whatever its kind."""
        return f"{self.prefix}:group:*:{group_id}*"
