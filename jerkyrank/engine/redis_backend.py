"""
jerkyrank.engine.redis_backend - Shared Redis Cache Backend
============================================================

A :class:`~jerkyrank.engine.cache.CacheBackend` over redis-py so several
API processes share one leaderboard / position / profile cache.

Values are pickled: cached rows are the engine's own dataclasses and are
only ever read back by the same code base.  Keys live under a namespace
prefix so the cache can share a Redis database with other applications.

``backend_from_env`` picks the backend at startup: Redis when
``REDIS_URL`` is set, otherwise ``None`` (the in-process memory backend).
"""

from __future__ import annotations

import logging
import os
import pickle
from typing import Any

import redis

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "jerkyrank:"


class RedisBackend:
    """TTL store on a synchronous ``redis.Redis`` client.

    redis-py raises its own ``redis.RedisError`` family on connection or
    server failures; :class:`~jerkyrank.engine.cache.CacheLayer` treats
    those like any other backend failure.
    """

    def __init__(self, client: redis.Redis, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = DEFAULT_NAMESPACE) -> "RedisBackend":
        # No network I/O here; the connection opens on the first command
        return cls(redis.Redis.from_url(url), namespace)

    def _name(self, key: str) -> str:
        return f"{self._namespace}{key}"

    def get(self, key: str) -> Any | None:
        data = self._client.get(self._name(key))
        if data is None:
            return None
        return pickle.loads(data)

    def set(self, key: str, value: Any, ttl: float) -> None:
        data = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        if ttl > 0:
            self._client.set(self._name(key), data, px=max(1, int(ttl * 1000)))
        else:
            self._client.set(self._name(key), data)

    def delete(self, key: str) -> None:
        self._client.delete(self._name(key))

    def keys(self, prefix: str) -> list[str]:
        found: list[str] = []
        for name in self._client.scan_iter(match=f"{self._name(prefix)}*"):
            if isinstance(name, bytes):
                name = name.decode("utf-8")
            found.append(name[len(self._namespace):])
        return found

    def close(self) -> None:
        self._client.close()


def backend_from_env() -> RedisBackend | None:
    """Build a :class:`RedisBackend` from ``REDIS_URL``; ``None`` when unset."""
    url = os.getenv("REDIS_URL", "").strip()
    if not url:
        logger.info("REDIS_URL not set; using the in-process cache")
        return None
    namespace = os.getenv("REDIS_NAMESPACE", DEFAULT_NAMESPACE)
    logger.info("Using Redis cache backend (namespace %r)", namespace)
    return RedisBackend.from_url(url, namespace)
