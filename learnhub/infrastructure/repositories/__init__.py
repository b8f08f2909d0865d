# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Cache-aside repositories over the backing store.

Example:
    async with database.session() as session:
        courses = CourseRepository(session, cache, ttl=settings.cache.course_ttl)
        course = await courses.get_by_id("c1")
"""

from learnhub.infrastructure.repositories.assignment import AssignmentRepository
from learnhub.infrastructure.repositories.base import CachedRepository
from learnhub.infrastructure.repositories.course import CourseRepository
from learnhub.infrastructure.repositories.lesson import LessonRepository
from learnhub.infrastructure.repositories.user import UserRepository

__all__ = [
    "AssignmentRepository",
    "CachedRepository",
    "CourseRepository",
    "LessonRepository",
    "UserRepository",
]
