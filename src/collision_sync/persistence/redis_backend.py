"""Redis cache backend implementing ICacheBackend.

Keys are namespaced with ``key_prefix`` so several environments can share
one Redis database.
"""

from __future__ import annotations

import logging

import redis

from collision_sync.core.exceptions import CacheError

logger = logging.getLogger(__name__)


class RedisCacheBackend:
    """Production ICacheBackend backed by Redis."""

    def __init__(self, host: str = "localhost", port: int = 6379, db: int = 0,
                 decode_responses: bool = True, key_prefix: str = "collision-sync:",
                 socket_timeout: float | None = 2.0) -> None:
        self._prefix = key_prefix
        self._client = redis.Redis(
            host=host, port=port, db=db, decode_responses=decode_responses, socket_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> str | None:
        try:
            value = self._client.get(self._key(key))
        except redis.RedisError as exc:
            raise CacheError(f"Redis GET failed for key={key!r}: {exc}") from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def setex(self, key: str, ttl: int, value: str) -> None:
        try:
            self._client.setex(self._key(key), ttl, value)
        except redis.RedisError as exc:
            raise CacheError(f"Redis SETEX failed for key={key!r}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except redis.RedisError as exc:
            raise CacheError(f"Redis DELETE failed for key={key!r}: {exc}") from exc

    def ping(self) -> bool:
        """True when the server answers; used by the readiness probe."""
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False
