# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Course repository."""

import logging
from typing import Optional

from sqlalchemy import select

from learnhub.infrastructure.cache import CacheKeys, CachePrefix, CacheTTL
from learnhub.infrastructure.database.models import Assignment, Course, Lesson
from learnhub.infrastructure.repositories.base import CachedRepository
from learnhub.models.common import Page, PaginationParams
from learnhub.models.course import CourseSchema

logger = logging.getLogger(__name__)


class CourseRepository(CachedRepository[Course, CourseSchema]):
    """Courses, cached under course:{id}.

    Values derived from a course (its lesson and assignment lists) live
    under course:{id}:{qualifier} and are dropped with the course.
    Deleting a course cascades to its lessons and assignments in the
    store, so their cache entries are dropped as well.
    """

    model = Course
    schema = CourseSchema
    cache_prefix = CachePrefix.COURSE
    default_ttl = CacheTTL.LONG
    conflict_fields = ("slug",)

    async def find_by_slug(self, slug: str) -> Optional[CourseSchema]:
        """Find a course by its unique slug.

        Not cached; the result goes through the primary so slug checks
        see the latest writes.
        """
        result = await self._run(
            "read by slug",
            self.session.execute(select(Course).where(Course.slug == slug)),
        )
        entity = result.scalar_one_or_none()
        return self._to_schema(entity) if entity is not None else None

    async def list_published(
        self, params: Optional[PaginationParams] = None, **filters: object
    ) -> Page[CourseSchema]:
        """List published courses."""
        return await self.list(params, status="published", **filters)

    async def delete(self, entity_id: str) -> CourseSchema:
        """Delete a course and drop the cache entries of its cascaded children.

        Raises:
            NotFoundError: If the course does not exist.
            BackingStoreError: If the store failed.
        """
        children = {
            CachePrefix.LESSON: await self._child_ids(Lesson, entity_id),
            CachePrefix.ASSIGNMENT: await self._child_ids(Assignment, entity_id),
        }

        deleted = await super().delete(entity_id)

        for prefix, child_ids in children.items():
            if not child_ids:
                continue
            keys = [CacheKeys.entity(prefix, child_id) for child_id in child_ids]
            patterns = [CacheKeys.entity_pattern(prefix, child_id) for child_id in child_ids]
            patterns.append(CacheKeys.list_pattern(prefix))
            if not await self.cache.invalidate(keys, patterns):
                logger.warning(
                    "Cache invalidation incomplete for %d %s(s) of deleted course %s",
                    len(child_ids),
                    prefix,
                    entity_id,
                )
        return deleted

    async def _child_ids(self, model: type[Lesson] | type[Assignment], course_id: str) -> list[str]:
        result = await self._run(
            "read children",
            self.session.execute(select(model.id).where(model.course_id == course_id)),
        )
        return list(result.scalars().all())
