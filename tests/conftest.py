# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

This module provides in-process stand-ins used across the unit tests:
- A dict-backed Redis store with failure and latency injection
- An async session double keeping ORM instances by primary key
- A controllable millisecond clock for broker backoff tests
"""

import asyncio
import fnmatch
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from learnhub.infrastructure.background import InMemoryJobBroker
from learnhub.infrastructure.cache import CacheClient, RedisClient, RedisError


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (requires services)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# =============================================================================
# Cache Fixtures
# =============================================================================


class FakeRedisStore:
    """Dict-backed stand-in for RedisClient.

    Values are kept in serialized form, like Redis would keep them.
    Set failing to make every call raise RedisError, or delay to make
    every call slow.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failing = False
        self.delay = 0.0

    async def _enter(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failing:
            raise RedisError(f"Failed to {operation}: {target}", ConnectionError("refused"))

    def operations(self, name: str) -> list[str]:
        """Targets of every recorded call of one operation."""
        return [target for operation, target in self.calls if operation == name]

    async def set(self, key: str, value: Any, expire_seconds: Optional[int] = None) -> None:
        await self._enter("set", key)
        self.data[key] = RedisClient.serialize(value)
        self.ttls[key] = expire_seconds

    async def get(self, key: str) -> Any:
        await self._enter("get", key)
        return RedisClient.deserialize(self.data.get(key))

    async def set_if_absent(
        self, key: str, value: Any, expire_seconds: Optional[int] = None
    ) -> bool:
        await self._enter("set_if_absent", key)
        if key in self.data:
            return False
        self.data[key] = RedisClient.serialize(value)
        self.ttls[key] = expire_seconds
        return True

    async def mget(self, keys: list[str]) -> list[Any]:
        await self._enter("mget", ",".join(keys))
        return [RedisClient.deserialize(self.data.get(key)) for key in keys]

    async def delete(self, key: str) -> bool:
        await self._enter("delete", key)
        self.ttls.pop(key, None)
        return self.data.pop(key, None) is not None

    async def delete_many(self, keys: list[str]) -> int:
        await self._enter("delete_many", ",".join(keys))
        deleted = 0
        for key in keys:
            self.ttls.pop(key, None)
            deleted += self.data.pop(key, None) is not None
        return deleted

    async def scan_delete(self, pattern: str) -> int:
        await self._enter("scan_delete", pattern)
        matched = [key for key in self.data if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self.data[key]
            self.ttls.pop(key, None)
        return len(matched)

    async def ping(self) -> bool:
        return not self.failing

    async def connect(self) -> None:
        await self._enter("connect", "")

    async def close(self) -> None:
        return None


@pytest.fixture
def redis_store() -> FakeRedisStore:
    """Provide an empty in-memory Redis store."""
    return FakeRedisStore()


@pytest.fixture
def cache(redis_store: FakeRedisStore) -> CacheClient:
    """Provide a cache client over the in-memory store."""
    return CacheClient(redis_store, key_prefix="test", default_ttl=300, timeout=0.2)  # type: ignore[arg-type]


# =============================================================================
# Database Fixtures
# =============================================================================


class FakeSession:
    """AsyncSession double keeping ORM instances by (model, id).

    Added and deleted instances become visible on commit and are dropped
    on rollback. Every method is a mock, so tests can assert calls and
    swap in failures through side_effect.
    """

    def __init__(self) -> None:
        self.rows: dict[tuple[type, str], Any] = {}
        self._pending: list[Any] = []
        self._deleted: list[Any] = []

        self.add = MagicMock(side_effect=self._pending.append)
        self.get = AsyncMock(side_effect=self._get)
        self.delete = AsyncMock(side_effect=self._deleted.append)
        self.commit = AsyncMock(side_effect=self._commit)
        self.rollback = AsyncMock(side_effect=self._rollback)
        self.execute = AsyncMock()

    def put(self, entity: Any) -> Any:
        """Store an instance as if it had been committed earlier."""
        self.rows[(type(entity), entity.id)] = entity
        return entity

    async def _get(self, model: type, entity_id: str, **kwargs: Any) -> Any:
        return self.rows.get((model, entity_id))

    async def _commit(self) -> None:
        for entity in self._pending:
            self.put(entity)
        for entity in self._deleted:
            self.rows.pop((type(entity), entity.id), None)
        self._pending.clear()
        self._deleted.clear()

    async def _rollback(self) -> None:
        self._pending.clear()
        self._deleted.clear()


def query_result(*, scalar: Any = None, rows: Optional[list[Any]] = None) -> MagicMock:
    """Build the result of session.execute().

    Args:
        scalar: Value of scalar_one() / scalar_one_or_none().
        rows: Instances returned by scalars().all().
    """
    result = MagicMock()
    result.scalar_one.return_value = scalar
    result.scalar_one_or_none.return_value = scalar
    result.scalars.return_value.all.return_value = rows or []
    return result


@pytest.fixture
def make_result() -> Any:
    """Provide the session.execute() result builder."""
    return query_result


@pytest.fixture
def session() -> FakeSession:
    """Provide an empty session double."""
    return FakeSession()


@pytest.fixture
def read_session() -> FakeSession:
    """Provide a second session double standing in for a read replica."""
    return FakeSession()


# =============================================================================
# Broker Fixtures
# =============================================================================


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    """Provide a controllable clock."""
    return FakeClock()


@pytest.fixture
def broker(clock: FakeClock) -> InMemoryJobBroker:
    """Provide an in-memory broker on the fake clock."""
    return InMemoryJobBroker(
        backoff_base_ms=1000,
        backoff_max_ms=60_000,
        visibility_timeout=30,
        clock=clock,
    )
