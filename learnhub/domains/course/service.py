# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Course service for authoring and publishing courses.

This module provides the CourseService class for:
- Course creation, update and deletion
- Publishing, which makes a course and its lessons searchable
- Cached course reads and listings

Writes go through CourseRepository, which invalidates the course's cache
entries. Search index maintenance and analytics run as background jobs.
When the broker is unavailable the write still succeeds and the result
names the deferred jobs.
"""

import logging
from typing import Optional

from learnhub.core.exceptions import ConflictError
from learnhub.domains.jobs import FollowUpJobs
from learnhub.infrastructure.background.producers import AnalyticsQueue, SearchIndexingQueue
from learnhub.infrastructure.repositories import CourseRepository
from learnhub.models.common import MutationResult, Page, PaginationParams
from learnhub.models.course import CourseCreate, CourseSchema, CourseUpdate
from learnhub.utils.datetime import utc_now

logger = logging.getLogger(__name__)


class CourseService:
    """Service for managing courses.

    Attributes:
        courses: Course repository.
    """

    def __init__(
        self,
        courses: CourseRepository,
        search: SearchIndexingQueue,
        analytics: AnalyticsQueue,
    ) -> None:
        """Initialize course service.

        Args:
            courses: Course repository bound to the request's session.
            search: Search indexing job producer.
            analytics: Analytics job producer.
        """
        self.courses = courses
        self._search = search
        self._analytics = analytics

    async def get_course(self, course_id: str) -> CourseSchema:
        """Get a course.

        Raises:
            NotFoundError: If the course does not exist.
        """
        return await self.courses.get_by_id(course_id)

    async def list_courses(
        self,
        params: Optional[PaginationParams] = None,
        *,
        status: Optional[str] = None,
        category: Optional[str] = None,
        instructor_id: Optional[str] = None,
    ) -> Page[CourseSchema]:
        """List courses, optionally filtered.

        Args:
            params: Page request.
            status: Only courses in this status.
            category: Only courses in this category.
            instructor_id: Only courses of this instructor.

        Returns:
            One page of courses.
        """
        filters = {
            name: value
            for name, value in (
                ("status", status),
                ("category", category),
                ("instructor_id", instructor_id),
            )
            if value is not None
        }
        return await self.courses.list(params, **filters)

    async def create_course(self, data: CourseCreate) -> MutationResult[CourseSchema]:
        """Create a draft course.

        Args:
            data: Course fields.

        Returns:
            The course and the scheduled analytics job.

        Raises:
            ConflictError: If the slug is taken.
            BackingStoreError: If the store failed.
        """
        course = await self.courses.create(data)

        jobs = FollowUpJobs()
        await jobs.schedule(
            "track-analytics-event",
            self._analytics.track_event("course_created", course.id),
        )

        logger.info("Created course: id=%s, slug=%s", course.id, course.slug)
        return jobs.result(course)

    async def update_course(
        self,
        course_id: str,
        patch: CourseUpdate,
        expected_version: Optional[int] = None,
    ) -> MutationResult[CourseSchema]:
        """Update a course. Published courses are re-indexed.

        Raises:
            NotFoundError: If the course does not exist.
            ConflictError: On version mismatch.
            BackingStoreError: If the store failed.
        """
        course = await self.courses.update(course_id, patch, expected_version=expected_version)

        jobs = FollowUpJobs()
        if course.status == "published":
            await jobs.schedule("search-index", self._search.index("course", course.id))

        logger.info("Updated course: id=%s, version=%d", course.id, course.version)
        return jobs.result(course)

    async def publish_course(self, course_id: str) -> MutationResult[CourseSchema]:
        """Publish a draft course and index it with its lessons.

        Raises:
            NotFoundError: If the course does not exist.
            ConflictError: If the course is already published.
        """
        current = await self.courses.get_by_id(course_id)
        if current.status == "published":
            raise ConflictError(f"Course {course_id} is already published")

        course = await self.courses.update(
            course_id,
            CourseUpdate(status="published", published_at=utc_now()),
            expected_version=current.version,
        )

        jobs = FollowUpJobs()
        await jobs.schedule("reindex-course", self._search.reindex_course(course.id))
        await jobs.schedule(
            "track-analytics-event",
            self._analytics.track_event("course_published", course.id),
        )

        logger.info("Published course: id=%s", course.id)
        return jobs.result(course)

    async def delete_course(self, course_id: str) -> MutationResult[CourseSchema]:
        """Delete a course and remove it from search.

        Raises:
            NotFoundError: If the course does not exist.
            ConflictError: If other records still reference it.
        """
        course = await self.courses.delete(course_id)

        jobs = FollowUpJobs()
        await jobs.schedule("search-index", self._search.remove("course", course.id))
        await jobs.schedule(
            "track-analytics-event",
            self._analytics.track_event("course_deleted", course.id),
        )

        logger.info("Deleted course: id=%s", course.id)
        return jobs.result(course)
