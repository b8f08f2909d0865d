# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for application wiring."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from learnhub.core.config.settings import CacheSettings, QueueSettings, Settings
from learnhub.core.container import Container
from learnhub.infrastructure.background import InMemoryJobBroker, JobWorker, QueueMonitor


@pytest.fixture
def settings():
    """Create test settings with the in-memory broker."""
    return Settings(
        environment="test",
        queue=QueueSettings(backend="memory"),
        cache=CacheSettings(key_prefix="test", course_ttl=1200),
    )


@pytest.fixture
def mock_database(session, read_session):
    """Create a mock DatabaseManager yielding the session doubles."""
    database = MagicMock()
    database.init = AsyncMock()
    database.close = AsyncMock()
    database.check_connection = AsyncMock(return_value=True)

    @asynccontextmanager
    async def primary():
        yield session

    @asynccontextmanager
    async def replica():
        yield read_session

    database.session = primary
    database.read_session = replica
    return database


@pytest.fixture
def container(settings, mock_database, redis_store):
    """Create a container over the doubles."""
    return Container(settings, database=mock_database, cache_store=redis_store)


class TestContainer:
    """Tests for Container."""

    def test_producers_require_init(self, container) -> None:
        with pytest.raises(RuntimeError, match="not initialized"):
            _ = container.producers

    @pytest.mark.asyncio
    async def test_init_wires_memory_broker(self, container, mock_database) -> None:
        await container.init()

        mock_database.init.assert_awaited_once()
        assert isinstance(container.broker_manager.broker, InMemoryJobBroker)
        assert container.producers.email is not None

    @pytest.mark.asyncio
    async def test_cache_down_at_startup_is_not_fatal(self, container, redis_store) -> None:
        redis_store.failing = True

        await container.init()
        health = await container.health()

        assert health["cache"] == "degraded"
        assert health["healthy"] is True

    @pytest.mark.asyncio
    async def test_services_use_configured_ttls(
        self, container, session, read_session
    ) -> None:
        await container.init()

        async with container.services() as services:
            assert services.course_repository.ttl == 1200
            assert services.course_repository.session is session
            assert services.course_repository.read_session is read_session
            assert services.user_repository.ttl == 900
            assert services.courses.courses is services.course_repository

    @pytest.mark.asyncio
    async def test_health(self, container) -> None:
        await container.init()

        health = await container.health()

        assert health["healthy"] is True
        assert health["database"] == "healthy"
        assert health["queues"]["broker_type"] == "memory"

    @pytest.mark.asyncio
    async def test_worker_and_monitor(self, container) -> None:
        await container.init()

        assert isinstance(container.create_worker({}), JobWorker)
        assert isinstance(container.create_monitor(), QueueMonitor)

    @pytest.mark.asyncio
    async def test_shutdown(self, container, mock_database) -> None:
        await container.init()
        broker = container.broker_manager.broker

        await container.shutdown()

        assert broker.is_closing is True
        mock_database.close.assert_awaited_once()
        with pytest.raises(RuntimeError):
            _ = container.producers
