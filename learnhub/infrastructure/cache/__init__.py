# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Cache infrastructure using Redis.

This package provides the Redis connection wrapper and the best-effort
cache client used by the cache-aside repositories. All keys are
namespaced: {key_prefix}:{entity}:{id}[:{qualifier}].

Example:
    from learnhub.infrastructure.cache import CacheClient, RedisClient

    # Construct at application startup
    redis = RedisClient.from_settings(settings.redis)
    await redis.connect()
    cache = CacheClient.from_settings(redis, settings.cache)

    await cache.set("course:c1", {"title": "Intro"}, ttl_seconds=3600)
    course = await cache.get("course:c1")

    # Cleanup at shutdown
    await redis.close()
"""

from learnhub.infrastructure.cache.cache_client import (
    CacheClient,
    CacheKeys,
    CachePrefix,
    CacheTTL,
    escape_glob,
)
from learnhub.infrastructure.cache.redis_client import RedisClient, RedisError

__all__ = [
    "CacheClient",
    "CacheKeys",
    "CachePrefix",
    "CacheTTL",
    "RedisClient",
    "RedisError",
    "escape_glob",
]
