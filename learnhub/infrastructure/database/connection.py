# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database connection management using SQLAlchemy async.

DatabaseManager owns the engines of the backing store:
- Primary: every write, and reads when no replica is configured.
- Replica: cache-miss reads of the repositories.

Uses SQLAlchemy 2.0 async API with asyncpg driver.

Example:
    from learnhub.infrastructure.database import DatabaseManager

    database = DatabaseManager(settings.database, echo=settings.debug)
    await database.init()

    async with database.session() as session:
        session.add(course)

    async with database.read_session() as session:
        course = await session.get(Course, "c1")

    await database.close()
"""

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from learnhub.core.config.settings import DatabaseSettings

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Base exception for database operations.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying SQLAlchemy or database error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """Initialize the database error.

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


class DatabaseManager:
    """Manages the primary and replica engines of the backing store.

    Attributes:
        settings: Database settings.
    """

    def __init__(self, settings: "DatabaseSettings", *, echo: bool = False) -> None:
        """Initialize the manager without connecting.

        Args:
            settings: Database settings.
            echo: Whether SQLAlchemy logs every statement.
        """
        self.settings = settings
        self._echo = echo
        self._primary_engine: Optional[AsyncEngine] = None
        self._replica_engine: Optional[AsyncEngine] = None
        self._primary_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None
        self._replica_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    def _create_engine(self, url: str) -> AsyncEngine:
        return create_async_engine(
            url,
            pool_size=self.settings.pool_size,
            max_overflow=self.settings.max_overflow,
            pool_pre_ping=True,
            pool_recycle=1800,
            echo=self._echo,
        )

    @staticmethod
    def _create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
        return async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def init(self) -> None:
        """Create the connection pools.

        Raises:
            DatabaseError: If engine creation fails.
        """
        if self._primary_engine is not None:
            return

        try:
            self._primary_engine = self._create_engine(self.settings.url)
            self._primary_sessionmaker = self._create_sessionmaker(self._primary_engine)

            if self.settings.has_replica:
                self._replica_engine = self._create_engine(self.settings.replica_url)
                self._replica_sessionmaker = self._create_sessionmaker(self._replica_engine)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to initialize database connection", e) from e

        logger.info(
            "Database initialized (replica: %s)",
            "yes" if self._replica_engine is not None else "no",
        )

    async def close(self) -> None:
        """Dispose of all connection pools."""
        if self._replica_engine is not None:
            await self._replica_engine.dispose()
            self._replica_engine = None
            self._replica_sessionmaker = None

        if self._primary_engine is not None:
            await self._primary_engine.dispose()
            self._primary_engine = None
            self._primary_sessionmaker = None

    @property
    def engine(self) -> AsyncEngine:
        """Get the primary engine.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._primary_engine is None:
            raise DatabaseError("Database not initialized. Call init() first.")
        return self._primary_engine

    def _sessionmaker(self, read_only: bool) -> async_sessionmaker[AsyncSession]:
        if read_only and self._replica_sessionmaker is not None:
            return self._replica_sessionmaker
        if self._primary_sessionmaker is None:
            raise DatabaseError("Database not initialized. Call init() first.")
        return self._primary_sessionmaker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Get a session on the primary.

        Repositories commit their own writes; anything left pending when
        the block exits is committed, and the session is rolled back on
        exception.

        Yields:
            AsyncSession for database operations.

        Raises:
            DatabaseError: If the database has not been initialized or
                if a database operation fails.
        """
        sessionmaker = self._sessionmaker(read_only=False)

        async with sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError("Database operation failed", e) from e
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Get a read-only session, on the replica when one is configured.

        Yields:
            AsyncSession for read queries.
        """
        sessionmaker = self._sessionmaker(read_only=True)

        async with sessionmaker() as session:
            yield session

    async def check_connection(self) -> bool:
        """Check if the primary database is reachable.

        Returns:
            True if the database is reachable, False otherwise.
        """
        if self._primary_engine is None:
            return False

        try:
            async with self._primary_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False
