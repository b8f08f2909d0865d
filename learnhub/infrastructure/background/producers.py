# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job producers, one per queue.

Producers are what application services talk to. Each one is bound to
a single queue and a broker, applies that queue's default priority and
attempts, validates the payload at enqueue time and returns the job id
once the broker stored the job.

Example:
    search = SearchIndexingQueue(broker)
    job_id = await search.index("course", "c1")
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from learnhub.core.exceptions import BrokerUnavailableError, ValidationError
from learnhub.infrastructure.background.broker import JobBroker
from learnhub.infrastructure.background.jobs import (
    AggregateAnalyticsJob,
    JobDescriptor,
    JobPayload,
    JobPriority,
    QueueName,
    ReindexCourseJob,
    SearchIndexJob,
    SendEmailJob,
    TrackAnalyticsEventJob,
    TranscodeVideoJob,
    VideoResolution,
    to_validation_error,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueDefaults:
    """Default scheduling options of a queue.

    Attributes:
        attempts: Total executions allowed per job.
        priority: Priority of jobs enqueued without one.
    """

    attempts: int
    priority: JobPriority


QUEUE_DEFAULTS: dict[QueueName, QueueDefaults] = {
    QueueName.EMAIL: QueueDefaults(attempts=5, priority=JobPriority.NORMAL),
    QueueName.ANALYTICS: QueueDefaults(attempts=3, priority=JobPriority.LOW),
    QueueName.VIDEO_PROCESSING: QueueDefaults(attempts=3, priority=JobPriority.HIGH),
    QueueName.SEARCH_INDEXING: QueueDefaults(attempts=5, priority=JobPriority.NORMAL),
}

DEFAULT_RESOLUTIONS: tuple[VideoResolution, ...] = ("1080p", "720p", "480p", "360p")


class JobProducer:
    """Enqueues jobs on one queue.

    Attributes:
        queue: Queue this producer writes to.
        defaults: Default attempts and priority.
    """

    queue: QueueName

    def __init__(self, broker: JobBroker, defaults: Optional[QueueDefaults] = None) -> None:
        """Initialize the producer.

        Args:
            broker: Broker jobs are stored in.
            defaults: Overrides the queue's default attempts and priority.
        """
        self._broker = broker
        self.defaults = defaults or QUEUE_DEFAULTS[self.queue]

    async def enqueue(
        self,
        payload: JobPayload,
        *,
        priority: Optional[JobPriority] = None,
        attempts: Optional[int] = None,
    ) -> str:
        """Validate and durably schedule one job.

        Args:
            payload: Job payload; must belong to this producer's queue.
            priority: Overrides the queue's default priority.
            attempts: Overrides the queue's default attempts.

        Returns:
            The job id.

        Raises:
            ValidationError: If the payload belongs to another queue or is invalid.
            BrokerUnavailableError: If the job could not be stored.
        """
        if payload.queue != self.queue:
            raise ValidationError(
                f"{payload.job_type} jobs cannot be enqueued on '{self.queue.value}'",
                errors=[{"loc": ["job_type"], "msg": f"belongs to '{payload.queue.value}'"}],
            )

        job = JobDescriptor.build(
            payload,
            priority=priority or self.defaults.priority,
            attempts_allowed=attempts or self.defaults.attempts,
            queue_name=self.queue,
        )

        try:
            job_id = await self._broker.enqueue(job)
        except BrokerUnavailableError:
            logger.error(
                "Failed to schedule %s job on %s", payload.job_type, self.queue.value
            )
            raise

        logger.info(
            "Scheduled %s job %s on %s (priority: %s)",
            job.job_type,
            job_id,
            self.queue.value,
            job.priority.value,
        )
        return job_id


class EmailQueue(JobProducer):
    """Transactional email jobs."""

    queue = QueueName.EMAIL

    async def send_email(
        self,
        to: str,
        template_id: str,
        template_data: Optional[dict[str, Any]] = None,
        priority: Optional[JobPriority] = None,
    ) -> str:
        """Schedule a templated email.

        Args:
            to: Recipient address.
            template_id: Email template identifier.
            template_data: Template variables (JSON values only).
            priority: Overrides the default priority.

        Returns:
            The job id.
        """
        payload = _build(
            SendEmailJob, to=to, template_id=template_id, template_data=template_data or {}
        )
        return await self.enqueue(payload, priority=priority)


class AnalyticsQueue(JobProducer):
    """Analytics event and aggregation jobs."""

    queue = QueueName.ANALYTICS

    async def track_event(
        self,
        event_type: str,
        entity_id: str,
        metrics: Optional[dict[str, float]] = None,
    ) -> str:
        """Schedule recording of one analytics event."""
        payload = _build(
            TrackAnalyticsEventJob,
            event_type=event_type,
            entity_id=entity_id,
            metrics=metrics or {},
        )
        return await self.enqueue(payload)

    async def aggregate(self, entity_type: str, entity_id: str, period: str = "daily") -> str:
        """Schedule recomputation of an entity's aggregated metrics."""
        payload = _build(
            AggregateAnalyticsJob, entity_type=entity_type, entity_id=entity_id, period=period
        )
        return await self.enqueue(payload)


class VideoProcessingQueue(JobProducer):
    """Video transcoding jobs. High priority by default."""

    queue = QueueName.VIDEO_PROCESSING

    async def transcode(
        self,
        video_asset_id: str,
        source_key: str,
        target_resolutions: Optional[list[str]] = None,
        priority: Optional[JobPriority] = None,
    ) -> str:
        """Schedule transcoding of an uploaded video.

        Args:
            video_asset_id: Video asset identifier.
            source_key: Storage key of the uploaded source.
            target_resolutions: Output resolutions; all supported ones by default.
            priority: Overrides the default priority.

        Returns:
            The job id.
        """
        payload = _build(
            TranscodeVideoJob,
            video_asset_id=video_asset_id,
            source_key=source_key,
            target_resolutions=list(target_resolutions or DEFAULT_RESOLUTIONS),
        )
        return await self.enqueue(payload, priority=priority)


class SearchIndexingQueue(JobProducer):
    """Search index maintenance jobs."""

    queue = QueueName.SEARCH_INDEXING

    async def index(self, entity_type: str, entity_id: str) -> str:
        """Schedule adding or refreshing one search document."""
        payload = _build(
            SearchIndexJob, entity_type=entity_type, entity_id=entity_id, operation="index"
        )
        return await self.enqueue(payload)

    async def remove(self, entity_type: str, entity_id: str) -> str:
        """Schedule removal of one search document."""
        payload = _build(
            SearchIndexJob, entity_type=entity_type, entity_id=entity_id, operation="remove"
        )
        return await self.enqueue(payload)

    async def reindex_course(self, course_id: str, include_lessons: bool = True) -> str:
        """Schedule a rebuild of a course's search documents."""
        payload = _build(ReindexCourseJob, course_id=course_id, include_lessons=include_lessons)
        return await self.enqueue(payload)


def _build(payload_type: type[JobPayload], **fields: Any) -> JobPayload:
    """Construct a payload, translating validation failures."""
    try:
        return payload_type(**fields)
    except PydanticValidationError as e:
        raise to_validation_error(f"Invalid {payload_type.__name__} payload", e) from e
