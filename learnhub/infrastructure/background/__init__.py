# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background job infrastructure for LearnHub.

Provides durable, queue-backed job dispatch:
- Tagged-union job payloads validated at enqueue time
- Redis broker with per-queue priorities, retry backoff and dead letters
- In-memory broker for tests and local runs
- One producer per queue for application services
- Worker, handlers and queue health monitoring

Quick Start:
    from learnhub.infrastructure.background import BrokerManager, SearchIndexingQueue

    manager = BrokerManager(settings.queue, settings.redis)
    await manager.setup()

    search = SearchIndexingQueue(manager.broker)
    await search.reindex_course("c1")

    await manager.shutdown()

Running Workers:
    worker = JobWorker(manager.broker, handlers)
    await worker.run(list(QueueName), stop_event)
"""

from learnhub.infrastructure.background.broker import (
    BrokerManager,
    JobBroker,
    JobInfo,
    JobState,
    QueueStats,
    RetryDecision,
    priority_score,
    retry_delay_ms,
)
from learnhub.infrastructure.background.handlers import (
    AnalyticsHandler,
    IdempotentHandler,
    RepositorySearchLoader,
    SearchIndexHandler,
    SendEmailHandler,
    TranscodeVideoHandler,
)
from learnhub.infrastructure.background.jobs import (
    AggregateAnalyticsJob,
    AnyJobPayload,
    JobDescriptor,
    JobPayload,
    JobPriority,
    QueueName,
    ReindexCourseJob,
    SearchIndexJob,
    SendEmailJob,
    TrackAnalyticsEventJob,
    TranscodeVideoJob,
    parse_payload,
)
from learnhub.infrastructure.background.memory_broker import InMemoryJobBroker
from learnhub.infrastructure.background.monitor import (
    AlertSeverity,
    HealthStatus,
    HealthThresholds,
    QueueAlert,
    QueueMonitor,
)
from learnhub.infrastructure.background.producers import (
    QUEUE_DEFAULTS,
    AnalyticsQueue,
    EmailQueue,
    JobProducer,
    QueueDefaults,
    SearchIndexingQueue,
    VideoProcessingQueue,
)
from learnhub.infrastructure.background.redis_broker import RedisJobBroker
from learnhub.infrastructure.background.worker import JobHandler, JobOutcome, JobWorker

__all__ = [
    # Broker
    "BrokerManager",
    "InMemoryJobBroker",
    "JobBroker",
    "JobInfo",
    "JobState",
    "QueueStats",
    "RedisJobBroker",
    "RetryDecision",
    "priority_score",
    "retry_delay_ms",
    # Jobs
    "AggregateAnalyticsJob",
    "AnyJobPayload",
    "JobDescriptor",
    "JobPayload",
    "JobPriority",
    "QueueName",
    "ReindexCourseJob",
    "SearchIndexJob",
    "SendEmailJob",
    "TrackAnalyticsEventJob",
    "TranscodeVideoJob",
    "parse_payload",
    # Producers
    "QUEUE_DEFAULTS",
    "AnalyticsQueue",
    "EmailQueue",
    "JobProducer",
    "QueueDefaults",
    "SearchIndexingQueue",
    "VideoProcessingQueue",
    # Worker
    "AnalyticsHandler",
    "IdempotentHandler",
    "JobHandler",
    "JobOutcome",
    "JobWorker",
    "RepositorySearchLoader",
    "SearchIndexHandler",
    "SendEmailHandler",
    "TranscodeVideoHandler",
    # Monitoring
    "AlertSeverity",
    "HealthStatus",
    "HealthThresholds",
    "QueueAlert",
    "QueueMonitor",
]
