# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Redis client for caching and job brokering.

This module provides an async Redis client wrapper around a connection
pool. Values are stored as JSON. Every operation raises RedisError on
failure; best-effort semantics are layered on top by CacheClient.

Instances are constructed explicitly and passed to their users; there is
no process-wide client.

Example:
    from learnhub.infrastructure.cache import RedisClient

    redis = RedisClient.from_settings(settings.redis)
    await redis.connect()
    await redis.set("course:c1", {"title": "Intro"}, expire_seconds=60)
    await redis.close()
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError as BaseRedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

if TYPE_CHECKING:
    from learnhub.core.config.settings import RedisSettings

logger = logging.getLogger(__name__)

SCAN_BATCH_SIZE = 500


class RedisError(Exception):
    """Exception raised for Redis operation failures.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying Redis error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """Initialize the Redis error.

        Args:
            message: Human-readable error description.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class RedisClient:
    """Async Redis client with JSON values and connection pooling.

    Attributes:
        url: The Redis connection URL.

    Example:
        client = RedisClient("redis://localhost:6379/0")
        await client.connect()

        await client.set("key", {"a": 1}, expire_seconds=30)
        value = await client.get("key")

        await client.close()
    """

    def __init__(
        self,
        url: str,
        *,
        max_connections: int = 50,
        socket_timeout: Optional[float] = None,
        socket_connect_timeout: Optional[float] = None,
        retries: int = 0,
    ) -> None:
        """Initialize the Redis client.

        Args:
            url: Redis connection URL.
            max_connections: Maximum connection pool size.
            socket_timeout: Socket read/write timeout in seconds.
            socket_connect_timeout: Socket connect timeout in seconds.
            retries: Connection-level retries with exponential backoff
                before an operation fails.
        """
        self.url = url
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._retries = retries
        self._pool: Optional[ConnectionPool] = None
        self._redis: Optional[Redis] = None

    @classmethod
    def from_settings(cls, settings: "RedisSettings", *, retries: int = 0) -> "RedisClient":
        """Build a client from Redis settings.

        Args:
            settings: Redis settings.
            retries: Connection-level retries before an operation fails.

        Returns:
            An unconnected RedisClient.
        """
        return cls(
            settings.url,
            max_connections=settings.max_connections,
            socket_timeout=settings.socket_timeout,
            socket_connect_timeout=settings.socket_connect_timeout,
            retries=retries,
        )

    async def connect(self) -> None:
        """Create the Redis connection pool.

        Raises:
            RedisError: If connection fails.
        """
        options: dict[str, Any] = {
            "max_connections": self._max_connections,
            "decode_responses": True,
            "socket_timeout": self._socket_timeout,
            "socket_connect_timeout": self._socket_connect_timeout,
        }
        if self._retries > 0:
            options["retry"] = Retry(ExponentialBackoff(cap=2.0, base=0.05), self._retries)
            options["retry_on_error"] = [RedisConnectionError, RedisTimeoutError]

        try:
            self._pool = ConnectionPool.from_url(self.url, **options)
            self._redis = Redis(connection_pool=self._pool)

            # Verify connection
            await self._redis.ping()
        except BaseRedisError as e:
            await self.close()
            raise RedisError("Failed to connect to Redis", e) from e

        logger.info("Redis connected (url: %s)", self.url.split("@")[-1])

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None

    @property
    def is_connected(self) -> bool:
        """Check if the connection pool has been created."""
        return self._redis is not None

    @property
    def redis(self) -> Redis:
        """Get the underlying redis-py client.

        Raises:
            RedisError: If not connected.
        """
        return self._ensure_connected()

    def _ensure_connected(self) -> Redis:
        """Ensure the client is connected.

        Returns:
            The Redis client instance.

        Raises:
            RedisError: If not connected.
        """
        if self._redis is None:
            raise RedisError("Redis client not connected. Call connect() first.")
        return self._redis

    @staticmethod
    def serialize(value: Any) -> str:
        """Serialize a value to a JSON string.

        Args:
            value: The value to serialize.

        Returns:
            JSON string representation.
        """
        return json.dumps(value, ensure_ascii=False, default=str)

    @staticmethod
    def deserialize(value: Optional[str]) -> Any:
        """Deserialize a stored JSON string.

        Args:
            value: The stored string.

        Returns:
            Python object, or None if value is None or not valid JSON.
        """
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable cached value")
            return None

    # ========== Key/value operations ==========

    async def set(
        self,
        key: str,
        value: Any,
        expire_seconds: Optional[int] = None,
    ) -> None:
        """Set a key-value pair.

        Args:
            key: The key.
            value: The value (JSON serialized).
            expire_seconds: Optional expiration time in seconds.

        Raises:
            RedisError: If the operation fails.
        """
        redis = self._ensure_connected()
        try:
            await redis.set(key, self.serialize(value), ex=expire_seconds)
        except BaseRedisError as e:
            raise RedisError(f"Failed to set key: {key}", e) from e

    async def set_if_absent(
        self,
        key: str,
        value: Any,
        expire_seconds: Optional[int] = None,
    ) -> bool:
        """Set a key only if it does not exist yet.

        Args:
            key: The key.
            value: The value (JSON serialized).
            expire_seconds: Optional expiration time in seconds.

        Returns:
            True if the key was set, False if it already existed.

        Raises:
            RedisError: If the operation fails.
        """
        redis = self._ensure_connected()
        try:
            result = await redis.set(key, self.serialize(value), ex=expire_seconds, nx=True)
            return bool(result)
        except BaseRedisError as e:
            raise RedisError(f"Failed to set key: {key}", e) from e

    async def get(self, key: str) -> Any:
        """Get a value by key.

        Args:
            key: The key.

        Returns:
            The deserialized value or None if not found.

        Raises:
            RedisError: If the operation fails.
        """
        redis = self._ensure_connected()
        try:
            value = await redis.get(key)
        except BaseRedisError as e:
            raise RedisError(f"Failed to get key: {key}", e) from e
        return self.deserialize(value)

    async def mget(self, keys: list[str]) -> list[Any]:
        """Get several values at once.

        Args:
            keys: The keys.

        Returns:
            Deserialized values in key order, None for missing keys.

        Raises:
            RedisError: If the operation fails.
        """
        if not keys:
            return []
        redis = self._ensure_connected()
        try:
            values = await redis.mget(keys)
        except BaseRedisError as e:
            raise RedisError(f"Failed to get {len(keys)} keys", e) from e
        return [self.deserialize(value) for value in values]

    async def delete(self, key: str) -> bool:
        """Delete a key.

        Args:
            key: The key to delete.

        Returns:
            True if the key was deleted, False if it didn't exist.

        Raises:
            RedisError: If the operation fails.
        """
        redis = self._ensure_connected()
        try:
            result = await redis.delete(key)
            return result > 0
        except BaseRedisError as e:
            raise RedisError(f"Failed to delete key: {key}", e) from e

    async def delete_many(self, keys: list[str]) -> int:
        """Delete several keys in one call.

        Returns:
            Number of keys deleted.

        Raises:
            RedisError: If the operation fails.
        """
        if not keys:
            return 0
        redis = self._ensure_connected()
        try:
            return await redis.delete(*keys)
        except BaseRedisError as e:
            raise RedisError(f"Failed to delete {len(keys)} keys", e) from e

    async def scan_delete(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern.

        Keys are found with SCAN in batches so the server is never blocked
        the way KEYS would block it.

        Args:
            pattern: Glob pattern, e.g. "learnhub:course:c1:*".

        Returns:
            Number of keys deleted.

        Raises:
            RedisError: If the operation fails.
        """
        redis = self._ensure_connected()
        deleted = 0
        try:
            batch: list[str] = []
            async for key in redis.scan_iter(match=pattern, count=SCAN_BATCH_SIZE):
                batch.append(key)
                if len(batch) >= SCAN_BATCH_SIZE:
                    deleted += await redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await redis.delete(*batch)
        except BaseRedisError as e:
            raise RedisError(f"Failed to delete keys matching: {pattern}", e) from e
        return deleted

    # ========== Health check ==========

    async def ping(self) -> bool:
        """Check if Redis is reachable.

        Returns:
            True if Redis responds to ping, False otherwise.
        """
        try:
            redis = self._ensure_connected()
            await redis.ping()
            return True
        except (RedisError, BaseRedisError):
            return False
