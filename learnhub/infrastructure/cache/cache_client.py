# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Best-effort cache client used by the cache-aside repositories.

The cache is a derived, expendable view of the backing store. It must
never become a single point of failure for reads, so:
- get() reports a miss when the backend fails or times out.
- set(), add(), delete() and delete_pattern() log failures instead of raising.

Every call runs under its own timeout and every key is namespaced with
the configured prefix.

Example:
    cache = CacheClient(redis_client, key_prefix="learnhub", default_ttl=300)

    key = CacheKeys.entity(CachePrefix.COURSE, "c1")
    course = await cache.get(key)
    if course is None:
        course = await load_course("c1")
        await cache.set(key, course, ttl_seconds=CacheTTL.LONG)

    # Invalidate the course and everything derived from it
    await cache.delete(key)
    await cache.delete_pattern(CacheKeys.entity_pattern(CachePrefix.COURSE, "c1"))
"""

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any, Awaitable, Optional, TypeVar

from learnhub.core.exceptions import CacheDegradedError
from learnhub.infrastructure.cache.redis_client import RedisError

if TYPE_CHECKING:
    from learnhub.core.config.settings import CacheSettings
    from learnhub.infrastructure.cache.redis_client import RedisClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class CachePrefix:
    """Cache key prefixes, one per cached entity type."""

    USER = "user"
    COURSE = "course"
    LESSON = "lesson"
    ASSIGNMENT = "assignment"
    ENROLLMENT = "enrollment"
    ANALYTICS = "analytics"
    SEARCH = "search"
    JOB = "job"


class CacheTTL:
    """Common TTL values in seconds."""

    SHORT = 60
    MEDIUM = 300
    LONG = 3600
    VERY_LONG = 86400


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters in a literal key segment."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class CacheKeys:
    """Builders for cache keys (without the client namespace).

    Keys have the form {prefix}:{id}[:{qualifier}...]. A qualifier names a
    value derived from the entity, e.g. "course:c1:lessons".
    """

    SEPARATOR = ":"
    LIST_SEGMENT = "list"

    @classmethod
    def entity(cls, prefix: str, entity_id: Any, *qualifiers: Any) -> str:
        """Build the key of one entity or of a value derived from it."""
        parts = [prefix, str(entity_id), *(str(q) for q in qualifiers)]
        return cls.SEPARATOR.join(parts)

    @classmethod
    def entity_pattern(cls, prefix: str, entity_id: Any) -> str:
        """Pattern matching every qualified key of one entity.

        The trailing separator keeps "course:c1:*" from matching
        "course:c10", so invalidating one id never touches another.
        """
        return f"{prefix}{cls.SEPARATOR}{escape_glob(str(entity_id))}{cls.SEPARATOR}*"

    @classmethod
    def list_key(cls, prefix: str, fingerprint: str) -> str:
        """Build the key of one cached list page."""
        return cls.SEPARATOR.join([prefix, cls.LIST_SEGMENT, fingerprint])

    @classmethod
    def list_pattern(cls, prefix: str) -> str:
        """Pattern matching every cached list page of an entity type."""
        return f"{prefix}{cls.SEPARATOR}{cls.LIST_SEGMENT}{cls.SEPARATOR}*"


class CacheClient:
    """Cache-aside facade over RedisClient with degrade-to-miss semantics.

    Attributes:
        key_prefix: Namespace prepended to every key.
        default_ttl: TTL used when a caller passes none.
        timeout: Per-call timeout in seconds.
        degraded_count: Number of cache failures absorbed so far.
    """

    def __init__(
        self,
        store: "RedisClient",
        *,
        key_prefix: str = "learnhub",
        default_ttl: int = CacheTTL.MEDIUM,
        timeout: float = 0.5,
    ) -> None:
        """Initialize the cache client.

        Args:
            store: Connected (or connecting) Redis client.
            key_prefix: Namespace prepended to every key.
            default_ttl: TTL in seconds used when a caller passes none.
            timeout: Per-call timeout in seconds.
        """
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self._store = store
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self.timeout = timeout
        self.degraded_count = 0

    @classmethod
    def from_settings(cls, store: "RedisClient", settings: "CacheSettings") -> "CacheClient":
        """Build a cache client from cache settings."""
        return cls(
            store,
            key_prefix=settings.key_prefix,
            default_ttl=settings.default_ttl,
            timeout=settings.operation_timeout,
        )

    def _full_key(self, key: str) -> str:
        if not self.key_prefix:
            return key
        return f"{self.key_prefix}{CacheKeys.SEPARATOR}{key}"

    async def _call(self, operation: str, target: str, awaitable: Awaitable[T]) -> tuple[bool, Optional[T]]:
        """Run one store call under the timeout, absorbing failures.

        Returns:
            Tuple of (succeeded, result).
        """
        try:
            return True, await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (RedisError, asyncio.TimeoutError) as e:
            self.degraded_count += 1
            error = CacheDegradedError(f"Cache {operation} failed for {target}", e)
            logger.warning("%s", error)
            return False, None

    async def get(self, key: str) -> Any:
        """Get a cached value.

        Args:
            key: Key without namespace.

        Returns:
            The cached value, or None on miss or cache failure.
        """
        _, value = await self._call("get", key, self._store.get(self._full_key(key)))
        return value

    async def get_many(self, keys: list[str]) -> list[Any]:
        """Get several cached values.

        Args:
            keys: Keys without namespace.

        Returns:
            Values in key order; None for misses. A cache failure makes
            every key a miss.
        """
        if not keys:
            return []
        ok, values = await self._call(
            "mget",
            f"{len(keys)} keys",
            self._store.mget([self._full_key(k) for k in keys]),
        )
        if not ok or values is None:
            return [None] * len(keys)
        return values

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Store a value with a TTL.

        Args:
            key: Key without namespace.
            value: JSON-serializable value.
            ttl_seconds: Positive TTL; the default TTL is used otherwise.

        Returns:
            True if the value was stored.
        """
        ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else self.default_ttl
        ok, _ = await self._call(
            "set", key, self._store.set(self._full_key(key), value, expire_seconds=ttl)
        )
        return ok

    async def add(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Store a value only if the key is not cached yet.

        Args:
            key: Key without namespace.
            value: JSON-serializable value.
            ttl_seconds: Positive TTL; the default TTL is used otherwise.

        Returns:
            True if the value was stored; False if the key already existed
            or the cache failed.
        """
        ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else self.default_ttl
        ok, stored = await self._call(
            "add", key, self._store.set_if_absent(self._full_key(key), value, expire_seconds=ttl)
        )
        return ok and bool(stored)

    async def delete(self, key: str) -> bool:
        """Delete a cached value.

        Args:
            key: Key without namespace.

        Returns:
            True if the delete reached the store, whether or not the key
            existed.
        """
        ok, _ = await self._call("delete", key, self._store.delete(self._full_key(key)))
        return ok

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every cached value whose key matches a glob pattern.

        Args:
            pattern: Pattern without namespace, e.g. "course:c1:*".

        Returns:
            Number of keys deleted (0 on cache failure).
        """
        _, deleted = await self._call(
            "delete_pattern", pattern, self._store.scan_delete(self._full_key(pattern))
        )
        return deleted or 0

    async def invalidate(self, keys: list[str], patterns: list[str]) -> bool:
        """Delete keys and patterns after a write.

        Failures are logged; the entries then correct themselves when
        their TTL expires.

        Returns:
            True if every delete reached the store.
        """
        failures_before = self.degraded_count
        if keys:
            await self._call(
                "delete",
                f"{len(keys)} keys",
                self._store.delete_many([self._full_key(k) for k in keys]),
            )
        for pattern in patterns:
            await self.delete_pattern(pattern)
        return self.degraded_count == failures_before

    async def ping(self) -> bool:
        """Check if the cache store is reachable."""
        return await self._store.ping()
