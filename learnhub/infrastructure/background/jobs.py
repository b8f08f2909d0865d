# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job descriptors and their payloads.

Every job payload is a member of one tagged union discriminated by
job_type. Payloads hold only JSON primitives and ids, never live
objects, because the worker that runs a job may live in another process.
Payloads are validated when a descriptor is built, before anything
reaches a broker, so malformed jobs never enter a queue.

On the wire a descriptor is a dramatiq Message: the job type is the
actor name, the payload is the kwargs, and scheduling state travels in
the options.

Example:
    payload = SearchIndexJob(entity_type="course", entity_id="c1", operation="index")
    job = JobDescriptor.build(payload, priority=JobPriority.NORMAL, attempts_allowed=5)
    data = job.encode()
    same = JobDescriptor.decode(data)
"""

import hashlib
import json
import uuid
from abc import abstractmethod
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from dramatiq import Message
from dramatiq.errors import DecodeError
from pydantic import BaseModel, ConfigDict, EmailStr, Field, JsonValue, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from learnhub.core.exceptions import ValidationError
from learnhub.utils.datetime import to_millis, utc_from_millis, utc_now


class QueueName(str, Enum):
    """Known job queues."""

    EMAIL = "email"
    ANALYTICS = "analytics"
    VIDEO_PROCESSING = "video-processing"
    SEARCH_INDEXING = "search-indexing"


class JobPriority(str, Enum):
    """Job priority within a queue."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Dequeue rank; lower ranks are served first."""
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    JobPriority.HIGH: 0,
    JobPriority.NORMAL: 1,
    JobPriority.LOW: 2,
}

VideoResolution = Literal["1080p", "720p", "480p", "360p"]
SearchEntityType = Literal["course", "lesson", "user"]


def _digest(value: Any) -> str:
    raw = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


class JobPayload(BaseModel):
    """Base class of every job payload.

    Attributes:
        queue: Queue the payload must be routed to.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    queue: ClassVar[QueueName]

    @property
    @abstractmethod
    def idempotency_key(self) -> str:
        """Identifies the effect of this job, stable across duplicate enqueues."""


class SendEmailJob(JobPayload):
    """Send one templated email."""

    queue: ClassVar[QueueName] = QueueName.EMAIL

    job_type: Literal["send-email"] = "send-email"
    to: EmailStr
    template_id: str = Field(min_length=1)
    template_data: dict[str, JsonValue] = Field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return f"{self.job_type}:{self.to}:{self.template_id}:{_digest(self.template_data)}"


class TrackAnalyticsEventJob(JobPayload):
    """Record one analytics event."""

    queue: ClassVar[QueueName] = QueueName.ANALYTICS

    job_type: Literal["track-analytics-event"] = "track-analytics-event"
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    metrics: dict[str, float] = Field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return f"{self.job_type}:{self.event_id}"


class AggregateAnalyticsJob(JobPayload):
    """Recompute the aggregated metrics of one entity for a period."""

    queue: ClassVar[QueueName] = QueueName.ANALYTICS

    job_type: Literal["aggregate-analytics"] = "aggregate-analytics"
    entity_type: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    period: Literal["daily", "weekly", "monthly"] = "daily"

    @property
    def idempotency_key(self) -> str:
        return f"{self.job_type}:{self.entity_type}:{self.entity_id}:{self.period}"


class TranscodeVideoJob(JobPayload):
    """Transcode an uploaded video into streaming resolutions."""

    queue: ClassVar[QueueName] = QueueName.VIDEO_PROCESSING

    job_type: Literal["transcode-video"] = "transcode-video"
    video_asset_id: str = Field(min_length=1)
    source_key: str = Field(min_length=1)
    target_resolutions: list[VideoResolution] = Field(min_length=1)

    @model_validator(mode="after")
    def check_unique_resolutions(self) -> "TranscodeVideoJob":
        """Reject repeated target resolutions."""
        if len(set(self.target_resolutions)) != len(self.target_resolutions):
            raise ValueError("target_resolutions must not repeat")
        return self

    @property
    def idempotency_key(self) -> str:
        resolutions = ",".join(sorted(self.target_resolutions))
        return f"{self.job_type}:{self.video_asset_id}:{resolutions}"


class SearchIndexJob(JobPayload):
    """Add, refresh or remove one document of the search index."""

    queue: ClassVar[QueueName] = QueueName.SEARCH_INDEXING

    job_type: Literal["search-index"] = "search-index"
    entity_type: SearchEntityType
    entity_id: str = Field(min_length=1)
    operation: Literal["index", "remove"] = "index"

    @property
    def idempotency_key(self) -> str:
        return f"{self.job_type}:{self.entity_type}:{self.entity_id}:{self.operation}"


class ReindexCourseJob(JobPayload):
    """Rebuild the search documents of a course and, optionally, its lessons."""

    queue: ClassVar[QueueName] = QueueName.SEARCH_INDEXING

    job_type: Literal["reindex-course"] = "reindex-course"
    course_id: str = Field(min_length=1)
    include_lessons: bool = True

    @property
    def idempotency_key(self) -> str:
        return f"{self.job_type}:{self.course_id}"


AnyJobPayload = Annotated[
    Union[
        SendEmailJob,
        TrackAnalyticsEventJob,
        AggregateAnalyticsJob,
        TranscodeVideoJob,
        SearchIndexJob,
        ReindexCourseJob,
    ],
    Field(discriminator="job_type"),
]

_payload_adapter: TypeAdapter[AnyJobPayload] = TypeAdapter(AnyJobPayload)


def to_validation_error(message: str, error: PydanticValidationError) -> ValidationError:
    errors = [
        {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
        for e in error.errors()
    ]
    return ValidationError(message, errors=errors, original_error=error)


def parse_payload(data: dict[str, Any]) -> JobPayload:
    """Build a payload from its serialized form.

    Args:
        data: Payload fields including job_type.

    Returns:
        The payload instance for the job type.

    Raises:
        ValidationError: If the job type is unknown or a field is invalid.
    """
    try:
        return _payload_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise to_validation_error(f"Invalid {data.get('job_type', 'unknown')} job payload", e) from e


class JobDescriptor(BaseModel):
    """One unit of deferred work as owned by a broker.

    Attributes:
        job_id: Unique job identifier.
        queue_name: Queue the job lives in.
        job_type: Discriminator of the payload.
        payload: Job payload.
        priority: Dequeue priority.
        attempts_allowed: Total executions allowed, including the first.
        attempts_made: Executions that have failed so far.
        created_at: Enqueue time.
        last_error: Error of the latest failed execution.
        sequence: Broker-assigned enqueue sequence, for FIFO within a
            priority tier. Kept across retries.
        lease_token: Set by dequeue on the leased copy; ack and nack are
            ignored unless it still matches the broker's lease. Never
            part of the stored message.
    """

    model_config = ConfigDict(validate_assignment=True)

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    queue_name: QueueName
    job_type: str
    payload: AnyJobPayload
    priority: JobPriority = JobPriority.NORMAL
    attempts_allowed: int = Field(default=3, ge=1)
    attempts_made: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    last_error: Optional[str] = None
    sequence: Optional[int] = None
    lease_token: Optional[str] = None

    @model_validator(mode="after")
    def check_routing(self) -> "JobDescriptor":
        """Ensure the job type and queue agree with the payload."""
        if self.job_type != self.payload.job_type:
            raise ValueError(
                f"job_type '{self.job_type}' does not match payload '{self.payload.job_type}'"
            )
        if self.queue_name != self.payload.queue:
            raise ValueError(
                f"{self.job_type} jobs belong to queue '{self.payload.queue.value}', "
                f"not '{self.queue_name.value}'"
            )
        return self

    @classmethod
    def build(
        cls,
        payload: JobPayload,
        *,
        priority: JobPriority = JobPriority.NORMAL,
        attempts_allowed: int = 3,
        queue_name: Optional[QueueName] = None,
    ) -> "JobDescriptor":
        """Build a descriptor for a new job.

        Args:
            payload: Job payload.
            priority: Dequeue priority.
            attempts_allowed: Total executions allowed.
            queue_name: Target queue; the payload's own queue by default.

        Returns:
            A validated descriptor.

        Raises:
            ValidationError: If the payload is invalid or routed to the
                wrong queue.
        """
        try:
            return cls(
                queue_name=queue_name or payload.queue,
                job_type=payload.job_type,
                payload=payload,
                priority=priority,
                attempts_allowed=attempts_allowed,
            )
        except PydanticValidationError as e:
            raise to_validation_error(f"Invalid {payload.job_type} job", e) from e

    @property
    def attempts_remaining(self) -> int:
        """Executions left before the job is dead-lettered."""
        return max(self.attempts_allowed - self.attempts_made, 0)

    @property
    def idempotency_key(self) -> str:
        """Idempotency key of the payload."""
        return self.payload.idempotency_key

    def to_message(self) -> Message:
        """Convert to a dramatiq message envelope."""
        return Message(
            queue_name=self.queue_name.value,
            actor_name=self.job_type,
            args=(),
            kwargs=self.payload.model_dump(mode="json"),
            options={
                "priority": self.priority.value,
                "attempts_allowed": self.attempts_allowed,
                "attempts_made": self.attempts_made,
                "last_error": self.last_error,
                "sequence": self.sequence,
            },
            message_id=self.job_id,
            message_timestamp=to_millis(self.created_at),
        )

    @classmethod
    def from_message(cls, message: Message) -> "JobDescriptor":
        """Rebuild a descriptor from a dramatiq message envelope.

        Raises:
            ValidationError: If the message does not describe a valid job.
        """
        options = message.options
        payload = parse_payload({**message.kwargs, "job_type": message.actor_name})
        try:
            return cls(
                job_id=message.message_id,
                queue_name=message.queue_name,
                job_type=message.actor_name,
                payload=payload,
                priority=options.get("priority", JobPriority.NORMAL.value),
                attempts_allowed=options.get("attempts_allowed", 1),
                attempts_made=options.get("attempts_made", 0),
                created_at=utc_from_millis(message.message_timestamp),
                last_error=options.get("last_error"),
                sequence=options.get("sequence"),
            )
        except PydanticValidationError as e:
            raise to_validation_error(f"Invalid job message {message.message_id}", e) from e

    def encode(self) -> bytes:
        """Serialize to the wire format."""
        return self.to_message().encode()

    @classmethod
    def decode(cls, data: bytes | str) -> "JobDescriptor":
        """Deserialize from the wire format.

        Raises:
            ValidationError: If the data is not a valid job message.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            message = Message.decode(data)
        except DecodeError as e:
            raise ValidationError("Undecodable job message", original_error=e) from e
        return cls.from_message(message)
