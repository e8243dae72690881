"""
Spotify metadata cache.

Entity metadata pulled from the Spotify API is cached in Redis hashes, one
hash per entity type (``artists``, ``tracks``), keyed by Spotify id. Entries
are permanent facts: there is no TTL and no eviction. Values are opaque
strings serialized by the caller.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .helperClasses import SpotistatsError


class CacheUnavailable(SpotistatsError):
    """The cache could not be reached or rejected the command."""
    pass


class SerializationError(SpotistatsError):
    """A cached value could not be encoded or decoded."""
    pass


class HashCache(ABC):
    """Field-level get/set over named hash namespaces."""

    @abstractmethod
    async def set_many(self, namespace: str, pairs: Sequence[Tuple[str, str]]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_many(self, namespace: str, keys: Sequence[str]) -> List[Optional[str]]:
        """Return one value per key, ``None`` where the field is missing."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class RedisHashCache(HashCache):
    def __init__(self, redis_url: str, client: Optional[aioredis.Redis] = None):
        self.redis_url = redis_url
        self._client = client

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def set_many(self, namespace: str, pairs: Sequence[Tuple[str, str]]) -> None:
        if not pairs:
            return
        try:
            await self._get_client().hset(namespace, mapping=dict(pairs))
        except RedisError as e:
            logging.error("Error setting %d items into hash \"%s\": %s", len(pairs), namespace, e)
            raise CacheUnavailable("Error setting values into cache") from e

    async def get_many(self, namespace: str, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        try:
            values = await self._get_client().hmget(namespace, list(keys))
        except RedisError as e:
            logging.error("Error pulling data from Redis hash \"%s\": %s", namespace, e)
            raise CacheUnavailable("Error pulling data from Redis cache") from e
        return [
            value.decode("utf-8") if isinstance(value, bytes) else value
            for value in values
        ]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
