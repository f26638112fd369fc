from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


class CacheUnavailableError(UpstreamUnavailableError):
    public_message = "Cache service unavailable"


class CacheClient:
    """Expiring key-value store backed by a pooled asyncio Redis client.

    One instance is created at startup and shared by every request; the
    underlying connection pool makes it safe for concurrent use.
    """

    def __init__(self, url: str, client: Any = None):
        self.url = url
        self._client = client

    def connect(self) -> None:
        if self._client is not None:
            return
        self._client = aioredis.from_url(self.url, decode_responses=True)
        logger.info("Redis client configured for %s", _mask_url(self.url))

    async def disconnect(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            await client.aclose()
        except RedisError:
            logger.warning("Redis client did not close cleanly", exc_info=True)

    def _require(self):
        if self._client is None:
            raise CacheUnavailableError("Redis client is not connected")
        return self._client

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            await self._require().set(key, value, ex=ttl)
        except RedisError as exc:
            raise CacheUnavailableError(f"Redis SET failed for {key}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._require().exists(key))
        except RedisError as exc:
            raise CacheUnavailableError(f"Redis EXISTS failed for {key}: {exc}") from exc

    async def exists_many(self, keys: Iterable[str]) -> list[bool]:
        keys = list(keys)
        if not keys:
            return []
        try:
            async with self._require().pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.exists(key)
                results = await pipe.execute()
        except RedisError as exc:
            raise CacheUnavailableError(f"Redis pipelined EXISTS failed: {exc}") from exc
        return [bool(value) for value in results]


def _mask_url(url: str) -> str:
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
