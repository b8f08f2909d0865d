# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Lesson repository."""

from typing import Optional

from learnhub.infrastructure.cache import CacheKeys, CachePrefix, CacheTTL
from learnhub.infrastructure.database.models import Lesson
from learnhub.infrastructure.repositories.base import CachedRepository
from learnhub.models.common import Page, PaginationParams
from learnhub.models.course import LessonSchema

LESSONS_QUALIFIER = "lessons"


class LessonRepository(CachedRepository[Lesson, LessonSchema]):
    """Lessons, cached under lesson:{id}.

    The ordered lesson list of a course is cached under
    course:{course_id}:lessons:{page}, so every lesson write also drops
    the owning course's derived keys.
    """

    model = Lesson
    schema = LessonSchema
    cache_prefix = CachePrefix.LESSON
    default_ttl = CacheTTL.LONG
    conflict_fields = ("course_id", "order_number")

    def related_cache_patterns(self, entity: LessonSchema) -> list[str]:
        return [CacheKeys.entity_pattern(CachePrefix.COURSE, entity.course_id)]

    async def list_by_course(
        self, course_id: str, params: Optional[PaginationParams] = None
    ) -> Page[LessonSchema]:
        """List the lessons of a course in lesson order.

        Args:
            course_id: Owning course.
            params: Page request.

        Returns:
            Lessons sorted by order_number.
        """
        params = params or PaginationParams()
        key = CacheKeys.entity(
            CachePrefix.COURSE, course_id, LESSONS_QUALIFIER, params.fingerprint({})
        )
        return await self._cached_page(
            key, params, {"course_id": course_id}, order_by="order_number"
        )
