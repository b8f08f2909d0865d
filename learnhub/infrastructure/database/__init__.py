# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for PostgreSQL connections.

This package provides SQLAlchemy async connections to the backing store
(primary for writes, optional replica for cache-miss reads) and the ORM
models of the repository entities.

Example:
    from learnhub.infrastructure.database import DatabaseManager

    database = DatabaseManager(settings.database)
    await database.init()

    async with database.session() as session:
        result = await session.execute(select(Course))
"""

from learnhub.infrastructure.database.connection import DatabaseError, DatabaseManager

__all__ = [
    "DatabaseError",
    "DatabaseManager",
]
