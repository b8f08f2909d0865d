# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application wiring.

The container constructs every client explicitly from settings and
passes them by reference; nothing is a module-level singleton.

Lifecycle:
- init(): connect the database, the cache and the job broker.
- services(): per request or job, repositories bound to fresh sessions
  and the services built on them.
- shutdown(): drain in-flight enqueues, then close broker, cache and
  database.

Example:
    container = create_container(get_settings())
    await container.init()

    async with container.services() as services:
        result = await services.courses.publish_course("c1")

    await container.shutdown()
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Optional

from learnhub.core.config import Settings, get_settings
from learnhub.domains.course import CourseService
from learnhub.domains.user import UserService
from learnhub.infrastructure.background import (
    AnalyticsQueue,
    BrokerManager,
    EmailQueue,
    JobHandler,
    JobWorker,
    QueueMonitor,
    SearchIndexingQueue,
    VideoProcessingQueue,
)
from learnhub.infrastructure.cache import CacheClient, RedisClient, RedisError
from learnhub.infrastructure.database import DatabaseManager
from learnhub.infrastructure.repositories import (
    AssignmentRepository,
    CourseRepository,
    LessonRepository,
    UserRepository,
)
from learnhub.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class Producers:
    """Job producers, one per queue."""

    email: EmailQueue
    analytics: AnalyticsQueue
    video: VideoProcessingQueue
    search: SearchIndexingQueue


@dataclass
class Services:
    """Repositories and services bound to one unit of work."""

    courses: CourseService
    users: UserService
    course_repository: CourseRepository
    lesson_repository: LessonRepository
    assignment_repository: AssignmentRepository
    user_repository: UserRepository
    producers: Producers


class Container:
    """Holds the process-wide clients.

    Attributes:
        settings: Application settings.
        database: Backing store connections.
        cache_store: Redis client of the cache.
        cache: Best-effort cache client.
        broker_manager: Job broker lifecycle manager.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        database: Optional[DatabaseManager] = None,
        cache_store: Optional[RedisClient] = None,
        broker_manager: Optional[BrokerManager] = None,
    ) -> None:
        self.settings = settings
        self.database = database or DatabaseManager(settings.database, echo=settings.debug)
        self.cache_store = cache_store or RedisClient.from_settings(settings.redis)
        self.cache = CacheClient.from_settings(self.cache_store, settings.cache)
        self.broker_manager = broker_manager or BrokerManager(settings.queue, settings.redis)
        self._producers: Optional[Producers] = None

    @property
    def producers(self) -> Producers:
        """Job producers.

        Raises:
            RuntimeError: If the container has not been initialized.
        """
        if self._producers is None:
            raise RuntimeError("Container not initialized. Call init() first.")
        return self._producers

    async def init(self) -> None:
        """Connect every client.

        A cache that cannot be reached is not fatal; reads then fall
        through to the backing store until it comes back.

        Raises:
            DatabaseError: If the database cannot be initialized.
            BrokerUnavailableError: If the job broker cannot connect.
        """
        await self.database.init()

        try:
            await self.cache_store.connect()
        except RedisError as e:
            logger.warning("Cache unavailable at startup, running degraded: %s", e)

        broker = await self.broker_manager.setup()
        self._producers = Producers(
            email=EmailQueue(broker),
            analytics=AnalyticsQueue(broker),
            video=VideoProcessingQueue(broker),
            search=SearchIndexingQueue(broker),
        )
        logger.info("Container initialized (environment: %s)", self.settings.environment)

    async def shutdown(self) -> None:
        """Drain in-flight enqueues and close every client."""
        await self.broker_manager.shutdown()
        self._producers = None
        await self.cache_store.close()
        await self.database.close()
        logger.info("Container shutdown complete")

    @asynccontextmanager
    async def services(self) -> AsyncIterator[Services]:
        """Build services bound to fresh sessions.

        Writes are committed by the repositories; the sessions are closed
        when the block exits.

        Yields:
            Fully wired services.
        """
        producers = self.producers
        cache_settings = self.settings.cache
        timeout = self.settings.database.statement_timeout

        async with self.database.session() as session, self.database.read_session() as reads:
            options: dict[str, Any] = {
                "read_session": reads,
                "list_ttl": cache_settings.list_ttl,
                "timeout": timeout,
            }
            courses = CourseRepository(session, self.cache, ttl=cache_settings.course_ttl, **options)
            lessons = LessonRepository(session, self.cache, ttl=cache_settings.lesson_ttl, **options)
            assignments = AssignmentRepository(
                session, self.cache, ttl=cache_settings.assignment_ttl, **options
            )
            users = UserRepository(session, self.cache, ttl=cache_settings.user_ttl, **options)

            yield Services(
                courses=CourseService(courses, producers.search, producers.analytics),
                users=UserService(users, producers.email, producers.search),
                course_repository=courses,
                lesson_repository=lessons,
                assignment_repository=assignments,
                user_repository=users,
                producers=producers,
            )

    def create_worker(self, handlers: Mapping[str, JobHandler]) -> JobWorker:
        """Build a worker on the container's broker."""
        return JobWorker(
            self.broker_manager.broker,
            handlers,
            job_timeout=self.settings.worker.job_timeout,
            poll_interval=self.settings.worker.poll_interval,
        )

    def create_monitor(self) -> QueueMonitor:
        """Build a queue monitor on the container's broker."""
        return QueueMonitor(self.broker_manager.broker)

    async def health(self) -> dict[str, Any]:
        """Report the state of every dependency.

        Returns:
            Health dictionary; the cache being down does not make the
            service unhealthy.
        """
        database_ok = await self.database.check_connection()
        cache_ok = await self.cache.ping()
        queues = await self.broker_manager.get_queue_stats()
        return {
            "healthy": database_ok and queues.get("status") == "healthy",
            "database": "healthy" if database_ok else "unavailable",
            "cache": "healthy" if cache_ok else "degraded",
            "queues": queues,
        }


def create_container(settings: Optional[Settings] = None) -> Container:
    """Configure logging and build a container from settings.

    Args:
        settings: Application settings; loaded from the environment by default.

    Returns:
        An uninitialized container.
    """
    settings = settings or get_settings()
    setup_logging(settings)
    return Container(settings)
