# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job handlers.

External services (search engine, email provider) are consumed through
small protocols; their SDKs are not part of this package.

Handlers must be safe to run more than once for the same job:
- SearchIndexHandler rebuilds documents from the current state of the
  backing store and upserts them by entity type + id, so repeated runs
  converge on one document.
- Handlers with external, non-repeatable effects (email) are wrapped in
  IdempotentHandler, which records completed idempotency keys in the
  cache and skips jobs whose effect was already applied.
"""

import logging
from typing import TYPE_CHECKING, Any, Optional, Protocol

from learnhub.infrastructure.background.jobs import (
    AggregateAnalyticsJob,
    JobDescriptor,
    ReindexCourseJob,
    SearchIndexJob,
    SendEmailJob,
    TrackAnalyticsEventJob,
    TranscodeVideoJob,
)
from learnhub.infrastructure.background.worker import JobHandler
from learnhub.infrastructure.cache import CacheClient, CacheKeys, CachePrefix, CacheTTL
from learnhub.models.common import PaginationParams
from learnhub.utils.datetime import utc_now

if TYPE_CHECKING:
    from learnhub.infrastructure.repositories import (
        CourseRepository,
        LessonRepository,
        UserRepository,
    )

logger = logging.getLogger(__name__)


class SearchIndex(Protocol):
    """Search engine client."""

    async def upsert(self, entity_type: str, entity_id: str, document: dict[str, Any]) -> None:
        ...

    async def delete(self, entity_type: str, entity_id: str) -> None:
        ...


class SearchDocumentLoader(Protocol):
    """Builds search documents from the backing store."""

    async def load_document(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        ...

    async def course_lesson_ids(self, course_id: str) -> list[str]:
        ...


class EmailSender(Protocol):
    """Email provider client."""

    async def send(self, to: str, template_id: str, template_data: dict[str, Any]) -> None:
        ...


class AnalyticsSink(Protocol):
    """Analytics store."""

    async def record_event(
        self, event_id: str, event_type: str, entity_id: str, metrics: dict[str, float]
    ) -> None:
        ...

    async def aggregate(self, entity_type: str, entity_id: str, period: str) -> None:
        ...


class VideoTranscoder(Protocol):
    """Media transcoding service."""

    async def transcode(self, source_key: str, resolution: str) -> str:
        """Transcode one resolution and return the output storage key."""
        ...


class SearchIndexHandler:
    """Handles search-index and reindex-course jobs."""

    def __init__(self, index: SearchIndex, loader: SearchDocumentLoader) -> None:
        self._index = index
        self._loader = loader

    async def _refresh(self, entity_type: str, entity_id: str) -> None:
        document = await self._loader.load_document(entity_type, entity_id)
        if document is None:
            # Entity deleted since the job was scheduled
            await self._index.delete(entity_type, entity_id)
            return
        await self._index.upsert(entity_type, entity_id, document)

    async def __call__(self, job: JobDescriptor) -> None:
        payload = job.payload

        if isinstance(payload, SearchIndexJob):
            if payload.operation == "remove":
                await self._index.delete(payload.entity_type, payload.entity_id)
            else:
                await self._refresh(payload.entity_type, payload.entity_id)
            logger.debug(
                "Search %s: %s %s", payload.operation, payload.entity_type, payload.entity_id
            )
            return

        if isinstance(payload, ReindexCourseJob):
            await self._refresh("course", payload.course_id)
            lesson_ids: list[str] = []
            if payload.include_lessons:
                lesson_ids = await self._loader.course_lesson_ids(payload.course_id)
                for lesson_id in lesson_ids:
                    await self._refresh("lesson", lesson_id)
            logger.info(
                "Course reindexed: %s (%d lesson(s))", payload.course_id, len(lesson_ids)
            )
            return

        raise TypeError(f"SearchIndexHandler cannot handle {job.job_type} jobs")


class SendEmailHandler:
    """Handles send-email jobs."""

    def __init__(self, sender: EmailSender) -> None:
        self._sender = sender

    async def __call__(self, job: JobDescriptor) -> None:
        payload = job.payload
        if not isinstance(payload, SendEmailJob):
            raise TypeError(f"SendEmailHandler cannot handle {job.job_type} jobs")

        await self._sender.send(payload.to, payload.template_id, dict(payload.template_data))
        logger.info("Email sent: %s to %s", payload.template_id, payload.to)


class AnalyticsHandler:
    """Handles track-analytics-event and aggregate-analytics jobs.

    Events carry their own event_id so the sink can upsert them; aggregation
    recomputes from scratch and is naturally repeatable.
    """

    def __init__(self, sink: AnalyticsSink) -> None:
        self._sink = sink

    async def __call__(self, job: JobDescriptor) -> None:
        payload = job.payload

        if isinstance(payload, TrackAnalyticsEventJob):
            await self._sink.record_event(
                payload.event_id, payload.event_type, payload.entity_id, dict(payload.metrics)
            )
            return

        if isinstance(payload, AggregateAnalyticsJob):
            await self._sink.aggregate(payload.entity_type, payload.entity_id, payload.period)
            logger.debug(
                "Analytics aggregated: %s %s (%s)",
                payload.entity_type,
                payload.entity_id,
                payload.period,
            )
            return

        raise TypeError(f"AnalyticsHandler cannot handle {job.job_type} jobs")


class TranscodeVideoHandler:
    """Handles transcode-video jobs, one output per target resolution."""

    def __init__(self, transcoder: VideoTranscoder) -> None:
        self._transcoder = transcoder

    async def __call__(self, job: JobDescriptor) -> None:
        payload = job.payload
        if not isinstance(payload, TranscodeVideoJob):
            raise TypeError(f"TranscodeVideoHandler cannot handle {job.job_type} jobs")

        outputs: dict[str, str] = {}
        for resolution in payload.target_resolutions:
            outputs[resolution] = await self._transcoder.transcode(payload.source_key, resolution)
        logger.info(
            "Video transcoded: %s (%s)", payload.video_asset_id, ", ".join(sorted(outputs))
        )


class IdempotentHandler:
    """Skips jobs whose idempotency key was already completed.

    Completion markers live in the cache for ttl seconds. When the cache
    is unavailable the job runs anyway, keeping at-least-once delivery.
    """

    def __init__(
        self,
        handler: JobHandler,
        cache: CacheClient,
        ttl: int = CacheTTL.VERY_LONG,
    ) -> None:
        self._handler = handler
        self._cache = cache
        self.ttl = ttl

    @staticmethod
    def marker_key(job: JobDescriptor) -> str:
        """Cache key of the completion marker of a job's effect."""
        return CacheKeys.entity(CachePrefix.JOB, "done", job.idempotency_key)

    async def __call__(self, job: JobDescriptor) -> None:
        key = self.marker_key(job)
        if await self._cache.get(key) is not None:
            logger.info(
                "Skipping %s job %s, effect already applied (%s)",
                job.job_type,
                job.job_id,
                job.idempotency_key,
            )
            return

        await self._handler(job)
        marked = await self._cache.add(
            key,
            {"job_id": job.job_id, "completed_at": utc_now().isoformat()},
            ttl_seconds=self.ttl,
        )
        if not marked:
            logger.info(
                "Completion of %s job %s not marked, another run marked it or the cache is down",
                job.job_type,
                job.job_id,
            )


class RepositorySearchLoader:
    """Builds search documents from the cache-aside repositories."""

    def __init__(
        self,
        courses: "CourseRepository",
        lessons: "LessonRepository",
        users: "UserRepository",
    ) -> None:
        self._repositories: dict[str, Any] = {"course": courses, "lesson": lessons, "user": users}
        self._lessons = lessons

    async def load_document(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        repository = self._repositories.get(entity_type)
        if repository is None:
            raise ValueError(f"Unknown search entity type: {entity_type}")

        entity = await repository.find_by_id(entity_id)
        if entity is None:
            return None
        return {"entity_type": entity_type, **entity.model_dump(mode="json")}

    async def course_lesson_ids(self, course_id: str) -> list[str]:
        lesson_ids: list[str] = []
        params = PaginationParams(page=1, limit=100)
        while True:
            page = await self._lessons.list_by_course(course_id, params)
            lesson_ids.extend(lesson.id for lesson in page.data)
            if not page.has_next:
                return lesson_ids
            params = params.model_copy(update={"page": params.page + 1})
