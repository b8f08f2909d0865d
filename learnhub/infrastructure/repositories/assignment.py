# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Assignment repository."""

from typing import Optional

from learnhub.infrastructure.cache import CacheKeys, CachePrefix, escape_glob
from learnhub.infrastructure.database.models import Assignment
from learnhub.infrastructure.repositories.base import CachedRepository
from learnhub.models.common import Page, PaginationParams
from learnhub.models.course import AssignmentSchema

ASSIGNMENTS_QUALIFIER = "assignments"


class AssignmentRepository(CachedRepository[Assignment, AssignmentSchema]):
    """Assignments, cached under assignment:{id}."""

    model = Assignment
    schema = AssignmentSchema
    cache_prefix = CachePrefix.ASSIGNMENT
    default_ttl = 1800

    def related_cache_patterns(self, entity: AssignmentSchema) -> list[str]:
        return [
            CacheKeys.entity(
                CachePrefix.COURSE, escape_glob(entity.course_id), ASSIGNMENTS_QUALIFIER, "*"
            )
        ]

    async def list_by_course(
        self, course_id: str, params: Optional[PaginationParams] = None
    ) -> Page[AssignmentSchema]:
        """List the assignments of a course, earliest due date first."""
        params = params or PaginationParams()
        key = CacheKeys.entity(
            CachePrefix.COURSE, course_id, ASSIGNMENTS_QUALIFIER, params.fingerprint({})
        )
        return await self._cached_page(
            key, params, {"course_id": course_id}, order_by="due_date"
        )
