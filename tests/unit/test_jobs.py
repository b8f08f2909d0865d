# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for job descriptors and payloads."""

from datetime import datetime, timezone

import pytest
from dramatiq import Message

from learnhub.core.exceptions import ValidationError
from learnhub.infrastructure.background.jobs import (
    JobDescriptor,
    JobPriority,
    QueueName,
    ReindexCourseJob,
    SearchIndexJob,
    SendEmailJob,
    TrackAnalyticsEventJob,
    TranscodeVideoJob,
    parse_payload,
)
from learnhub.utils.datetime import to_millis, utc_from_millis


class TestPayloads:
    """Tests for payload validation."""

    def test_payloads_know_their_queue(self) -> None:
        assert SendEmailJob.queue == QueueName.EMAIL
        assert TranscodeVideoJob.queue == QueueName.VIDEO_PROCESSING
        assert ReindexCourseJob.queue == QueueName.SEARCH_INDEXING

    def test_email_requires_valid_address(self) -> None:
        with pytest.raises(ValueError):
            SendEmailJob(to="not-an-email", template_id="welcome")

    def test_template_data_must_be_json(self) -> None:
        """Test live objects cannot be carried in a payload."""
        with pytest.raises(ValueError):
            SendEmailJob(to="a@example.com", template_id="welcome", template_data={"x": object()})

    def test_transcode_rejects_repeated_resolutions(self) -> None:
        with pytest.raises(ValueError, match="must not repeat"):
            TranscodeVideoJob(
                video_asset_id="v1", source_key="raw/v1.mp4", target_resolutions=["720p", "720p"]
            )

    def test_transcode_rejects_unknown_resolution(self) -> None:
        with pytest.raises(ValueError):
            TranscodeVideoJob(video_asset_id="v1", source_key="raw/v1.mp4", target_resolutions=["4k"])

    def test_unknown_fields_rejected(self) -> None:
        with pytest.raises(ValueError):
            SearchIndexJob(entity_type="course", entity_id="c1", priority="high")

    def test_payloads_are_immutable(self) -> None:
        job = SearchIndexJob(entity_type="course", entity_id="c1")

        with pytest.raises(ValueError):
            job.entity_id = "c2"  # type: ignore[misc]

    def test_parse_payload_dispatches_on_job_type(self) -> None:
        payload = parse_payload({"job_type": "reindex-course", "course_id": "c1"})

        assert isinstance(payload, ReindexCourseJob)
        assert payload.include_lessons is True

    def test_parse_payload_unknown_type(self) -> None:
        with pytest.raises(ValidationError, match="Invalid delete-everything job payload"):
            parse_payload({"job_type": "delete-everything"})

    def test_parse_payload_reports_field_errors(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_payload({"job_type": "search-index", "entity_type": "planet", "entity_id": "p1"})

        assert exc_info.value.errors
        assert "entity_type" in exc_info.value.errors[0]["loc"]

    def test_idempotency_keys(self) -> None:
        first = SendEmailJob(to="a@example.com", template_id="welcome", template_data={"n": 1})
        same = SendEmailJob(to="a@example.com", template_id="welcome", template_data={"n": 1})
        other = SendEmailJob(to="a@example.com", template_id="welcome", template_data={"n": 2})

        assert first.idempotency_key == same.idempotency_key
        assert first.idempotency_key != other.idempotency_key

    def test_analytics_events_get_distinct_ids(self) -> None:
        first = TrackAnalyticsEventJob(event_type="view", entity_id="c1")
        second = TrackAnalyticsEventJob(event_type="view", entity_id="c1")

        assert first.idempotency_key != second.idempotency_key


class TestJobDescriptor:
    """Tests for JobDescriptor."""

    def test_build_routes_to_payload_queue(self) -> None:
        job = JobDescriptor.build(
            SearchIndexJob(entity_type="course", entity_id="c1"),
            priority=JobPriority.HIGH,
            attempts_allowed=5,
        )

        assert job.queue_name == QueueName.SEARCH_INDEXING
        assert job.job_type == "search-index"
        assert job.attempts_made == 0
        assert job.attempts_remaining == 5

    def test_build_rejects_wrong_queue(self) -> None:
        with pytest.raises(ValidationError, match="Invalid search-index job"):
            JobDescriptor.build(
                SearchIndexJob(entity_type="course", entity_id="c1"),
                queue_name=QueueName.EMAIL,
            )

    def test_build_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValidationError):
            JobDescriptor.build(
                SearchIndexJob(entity_type="course", entity_id="c1"), attempts_allowed=0
            )

    def test_priority_ranks(self) -> None:
        assert JobPriority.HIGH.rank < JobPriority.NORMAL.rank < JobPriority.LOW.rank

    def test_wire_format_is_a_dramatiq_message(self) -> None:
        job = JobDescriptor.build(
            SendEmailJob(to="a@example.com", template_id="welcome", template_data={"n": 1}),
            attempts_allowed=5,
        ).model_copy(update={"attempts_made": 2, "last_error": "smtp down", "sequence": 7})

        message = Message.decode(job.encode())
        decoded = JobDescriptor.decode(job.encode())

        assert message.actor_name == "send-email"
        assert message.queue_name == "email"
        assert message.kwargs["to"] == "a@example.com"
        assert message.options["attempts_made"] == 2
        assert decoded.job_id == job.job_id
        assert decoded.payload == job.payload
        assert decoded.last_error == "smtp down"
        assert decoded.sequence == 7

    def test_decode_rejects_garbage(self) -> None:
        with pytest.raises(ValidationError, match="Undecodable"):
            JobDescriptor.decode(b"\x00not json")

    def test_decode_rejects_tampered_payload(self) -> None:
        job = JobDescriptor.build(SearchIndexJob(entity_type="course", entity_id="c1"))
        message = job.to_message()
        tampered = message.copy(kwargs={**message.kwargs, "entity_type": "planet"})

        with pytest.raises(ValidationError):
            JobDescriptor.from_message(tampered)

    def test_naive_created_at_is_read_as_utc(self) -> None:
        naive = datetime(2025, 1, 2, 3, 4, 5)
        job = JobDescriptor.build(SearchIndexJob(entity_type="course", entity_id="c1"))

        message = job.model_copy(update={"created_at": naive}).to_message()

        assert message.message_timestamp == to_millis(naive.replace(tzinfo=timezone.utc))
        assert utc_from_millis(message.message_timestamp) == naive.replace(tzinfo=timezone.utc)
