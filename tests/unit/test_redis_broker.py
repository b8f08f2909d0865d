# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the Redis job broker."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from learnhub.core.config.settings import QueueSettings, RedisSettings
from learnhub.core.exceptions import BrokerUnavailableError, NotFoundError, ValidationError
from learnhub.infrastructure.background import (
    JobDescriptor,
    JobPriority,
    JobState,
    QueueName,
    RedisJobBroker,
    SearchIndexJob,
)
from learnhub.infrastructure.background.broker import PRIORITY_SPAN
from learnhub.infrastructure.background.redis_broker import (
    ACK_SCRIPT,
    DEQUEUE_SCRIPT,
    NACK_SCRIPT,
)
from learnhub.infrastructure.cache import RedisError

SEARCH = QueueName.SEARCH_INDEXING
NOW = 1_700_000_000_000


class FakePipeline:
    """Records queued commands of a redis-py pipeline."""

    def __init__(self, results=None, error=None) -> None:
        self.commands: list[tuple] = []
        self.results = results or []
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.commands.append((name, *args))

        return queue

    async def execute(self):
        if self.error is not None:
            raise self.error
        return self.results


@pytest.fixture
def pipeline():
    """Create the pipeline every transaction goes through."""
    return FakePipeline()


@pytest.fixture
def scripts():
    """Registered Lua scripts by source; dequeue finds nothing, ack and nack succeed."""
    return {
        DEQUEUE_SCRIPT: AsyncMock(return_value=[0]),
        ACK_SCRIPT: AsyncMock(return_value=1),
        NACK_SCRIPT: AsyncMock(return_value=1),
    }


@pytest.fixture
def mock_redis(pipeline, scripts):
    """Create a mock redis.asyncio client."""
    redis = MagicMock()
    redis.incr = AsyncMock(return_value=1)
    redis.pipeline = MagicMock(return_value=pipeline)
    redis.register_script = MagicMock(side_effect=lambda source: scripts[source])
    return redis


@pytest.fixture
def mock_client(mock_redis):
    """Create a mock RedisClient."""
    client = MagicMock()
    client.is_connected = False
    client.connect = AsyncMock()
    client.close = AsyncMock()
    client.redis = mock_redis
    return client


@pytest.fixture
def redis_broker(mock_client):
    """Create a broker over the mock client."""
    return RedisJobBroker(
        mock_client,
        namespace="lh:jobs",
        backoff_base_ms=1000,
        visibility_timeout=30,
        operation_timeout=0.1,
        clock=lambda: NOW,
    )


def search_job(attempts: int = 3, priority: JobPriority = JobPriority.NORMAL) -> JobDescriptor:
    return JobDescriptor.build(
        SearchIndexJob(entity_type="course", entity_id="c1"),
        priority=priority,
        attempts_allowed=attempts,
    )


class TestKeys:
    """Tests for the Redis key layout."""

    def test_queue_keys(self, redis_broker) -> None:
        keys = redis_broker.keys(SEARCH)

        assert keys.waiting == "lh:jobs:search-indexing"
        assert keys.delayed == "lh:jobs:search-indexing.DQ"
        assert keys.dead == "lh:jobs:search-indexing.XQ"
        assert keys.messages == "lh:jobs:search-indexing.msgs"
        assert keys.tokens == "lh:jobs:search-indexing.tokens"
        assert keys.paused == "lh:jobs:search-indexing.paused"


class TestConnect:
    """Tests for connect()."""

    @pytest.mark.asyncio
    async def test_connect_registers_scripts(self, redis_broker, mock_client, mock_redis) -> None:
        await redis_broker.connect()

        mock_client.connect.assert_awaited_once()
        assert mock_redis.register_script.call_count == 3

    @pytest.mark.asyncio
    async def test_unreachable_redis(self, redis_broker, mock_client) -> None:
        mock_client.connect.side_effect = RedisError("Failed to connect to Redis")

        with pytest.raises(BrokerUnavailableError, match="cannot reach Redis"):
            await redis_broker.connect()

    @pytest.mark.asyncio
    async def test_dequeue_requires_connect(self, redis_broker) -> None:
        with pytest.raises(BrokerUnavailableError, match="not connected"):
            await redis_broker.dequeue(SEARCH)

    def test_from_settings(self) -> None:
        broker = RedisJobBroker.from_settings(
            QueueSettings(namespace="x:jobs", visibility_timeout=90), RedisSettings()
        )

        assert broker.namespace == "x:jobs"
        assert broker.visibility_timeout == 90


class TestEnqueue:
    """Tests for enqueue()."""

    @pytest.mark.asyncio
    async def test_stores_message_and_score_atomically(
        self, redis_broker, mock_redis, pipeline
    ) -> None:
        mock_redis.incr.return_value = 5
        job = search_job(priority=JobPriority.LOW)

        job_id = await redis_broker.enqueue(job)

        score = JobPriority.LOW.rank * PRIORITY_SPAN + 5
        mock_redis.pipeline.assert_called_with(transaction=True)
        assert ("zadd", "lh:jobs:search-indexing", {job_id: score}) in pipeline.commands
        assert ("hset", "lh:jobs:search-indexing.scores", job_id, score) in pipeline.commands

        stored = [cmd for cmd in pipeline.commands if cmd[:2] == ("hset", "lh:jobs:search-indexing.msgs")]
        assert JobDescriptor.decode(stored[0][3]).sequence == 5

    @pytest.mark.asyncio
    async def test_connection_failure(self, redis_broker, mock_redis) -> None:
        mock_redis.incr.side_effect = RedisConnectionError("refused")

        with pytest.raises(BrokerUnavailableError) as exc_info:
            await redis_broker.enqueue(search_job())

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_transaction_failure(self, redis_broker, pipeline) -> None:
        pipeline.error = RedisConnectionError("reset during EXEC")

        with pytest.raises(BrokerUnavailableError, match="enqueue failed"):
            await redis_broker.enqueue(search_job())

    @pytest.mark.asyncio
    async def test_timeout(self, redis_broker, mock_redis) -> None:
        async def slow_incr(key):
            await asyncio.sleep(1)

        mock_redis.incr.side_effect = slow_incr

        with pytest.raises(BrokerUnavailableError, match="timed out"):
            await redis_broker.enqueue(search_job())



def leased(job: JobDescriptor, token: str = "t1") -> JobDescriptor:
    return job.model_copy(update={"lease_token": token})


class TestDequeue:
    """Tests for dequeue()."""

    @pytest.mark.asyncio
    async def test_empty_queue(self, redis_broker) -> None:
        await redis_broker.connect()

        assert await redis_broker.dequeue(SEARCH) is None

    @pytest.mark.asyncio
    async def test_leases_job_with_token(self, redis_broker, scripts) -> None:
        job = search_job()
        script = scripts[DEQUEUE_SCRIPT]
        script.return_value = [0, job.job_id, job.encode().decode()]
        await redis_broker.connect()

        job_lease = await redis_broker.dequeue(SEARCH)

        assert job_lease.job_id == job.job_id
        assert job_lease.lease_token
        kwargs = script.call_args.kwargs
        assert kwargs["keys"][0] == "lh:jobs:search-indexing"
        assert kwargs["keys"][-1] == "lh:jobs:search-indexing.paused"
        assert kwargs["args"] == [NOW, NOW + 30_000, job_lease.lease_token]

    @pytest.mark.asyncio
    async def test_undecodable_message_is_dead_lettered(self, redis_broker, scripts) -> None:
        job = search_job()
        scripts[DEQUEUE_SCRIPT].side_effect = [
            [0, "bad", "not a dramatiq message"],
            [0, job.job_id, job.encode().decode()],
        ]
        await redis_broker.connect()

        served = await redis_broker.dequeue(SEARCH)

        assert served.job_id == job.job_id
        bury = scripts[NACK_SCRIPT].call_args.kwargs
        assert bury["keys"][-1] == "lh:jobs:search-indexing.XQ"
        assert bury["args"][0] == "bad"
        assert bury["args"][2:] == ["not a dramatiq message", ""]
        first_token = scripts[DEQUEUE_SCRIPT].call_args_list[0].kwargs["args"][2]
        assert bury["args"][1] == first_token

    @pytest.mark.asyncio
    async def test_paused_or_empty_after_requeue(self, redis_broker, scripts) -> None:
        scripts[DEQUEUE_SCRIPT].return_value = [2]
        await redis_broker.connect()

        assert await redis_broker.dequeue(SEARCH) is None


class TestAck:
    """Tests for ack()."""

    @pytest.mark.asyncio
    async def test_releases_current_lease(self, redis_broker, scripts) -> None:
        job = leased(search_job())
        await redis_broker.connect()

        assert await redis_broker.ack(job) is True
        kwargs = scripts[ACK_SCRIPT].call_args.kwargs
        assert kwargs["keys"][:2] == [
            "lh:jobs:search-indexing.leases",
            "lh:jobs:search-indexing.tokens",
        ]
        assert kwargs["args"] == [job.job_id, "t1"]

    @pytest.mark.asyncio
    async def test_lost_lease(self, redis_broker, scripts) -> None:
        scripts[ACK_SCRIPT].return_value = 0
        await redis_broker.connect()

        assert await redis_broker.ack(leased(search_job())) is False


class TestNack:
    """Tests for nack()."""

    @pytest.mark.asyncio
    async def test_schedules_retry(self, redis_broker, scripts) -> None:
        job = leased(search_job(attempts=3))
        await redis_broker.connect()

        decision = await redis_broker.nack(job, "boom")

        assert decision.dead_lettered is False
        assert decision.delay_ms == 1000
        job_id, token, body, due = scripts[NACK_SCRIPT].call_args.kwargs["args"]
        assert (job_id, token, due) == (job.job_id, "t1", NOW + 1000)
        stored = JobDescriptor.decode(body)
        assert stored.attempts_made == 1
        assert stored.last_error == "boom"
        assert stored.lease_token is None

    @pytest.mark.asyncio
    async def test_dead_letters_last_attempt(self, redis_broker, scripts) -> None:
        await redis_broker.connect()

        decision = await redis_broker.nack(leased(search_job(attempts=1)), "boom")

        assert decision.dead_lettered is True
        assert scripts[NACK_SCRIPT].call_args.kwargs["args"][3] == ""

    @pytest.mark.asyncio
    async def test_lost_lease(self, redis_broker, scripts) -> None:
        scripts[NACK_SCRIPT].return_value = 0
        await redis_broker.connect()

        assert await redis_broker.nack(leased(search_job()), "boom") is None


class TestGetJob:
    """Tests for get_job()."""

    @pytest.mark.asyncio
    async def test_delayed(self, redis_broker, pipeline) -> None:
        job = search_job()
        pipeline.results = [job.encode().decode(), None, None, NOW + 1000]

        info = await redis_broker.get_job(SEARCH, job.job_id)

        assert info.state == JobState.DELAYED
        assert info.job.job_id == job.job_id

    @pytest.mark.asyncio
    async def test_dead_at_head_of_list(self, redis_broker, pipeline) -> None:
        job = search_job()
        pipeline.results = [job.encode().decode(), None, 0, None]

        assert (await redis_broker.get_job(SEARCH, job.job_id)).state == JobState.DEAD

    @pytest.mark.asyncio
    async def test_unknown(self, redis_broker, pipeline) -> None:
        pipeline.results = [None, None, None, None]

        assert await redis_broker.get_job(SEARCH, "missing") is None


class TestDeadLetters:
    """Tests for dead-letter operations."""

    @pytest.mark.asyncio
    async def test_retry_unknown(self, redis_broker, mock_redis) -> None:
        mock_redis.hget = AsyncMock(return_value=None)

        with pytest.raises(NotFoundError):
            await redis_broker.retry_dead_letter(SEARCH, "missing")

    @pytest.mark.asyncio
    async def test_retry_job_not_dead_lettered(self, redis_broker, mock_redis) -> None:
        mock_redis.hget = AsyncMock(return_value=search_job().encode().decode())
        mock_redis.lrem = AsyncMock(return_value=0)

        with pytest.raises(NotFoundError):
            await redis_broker.retry_dead_letter(SEARCH, "waiting-job")

    @pytest.mark.asyncio
    async def test_retry_undecodable_keeps_it_dead(self, redis_broker, mock_redis) -> None:
        mock_redis.hget = AsyncMock(return_value="garbage")
        mock_redis.lrem = AsyncMock(return_value=1)

        with pytest.raises(ValidationError):
            await redis_broker.retry_dead_letter(SEARCH, "bad")

        mock_redis.lrem.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_requeues_with_fresh_attempts(self, redis_broker, mock_redis, pipeline) -> None:
        job = search_job(attempts=1).model_copy(
            update={"attempts_made": 1, "last_error": "boom", "sequence": 9}
        )
        mock_redis.lrem = AsyncMock(return_value=1)
        mock_redis.hget = AsyncMock(return_value=job.encode().decode())

        redriven = await redis_broker.retry_dead_letter(SEARCH, job.job_id)

        assert redriven.attempts_made == 0
        assert redriven.last_error is None
        score = JobPriority.NORMAL.rank * PRIORITY_SPAN + 9
        assert ("zadd", "lh:jobs:search-indexing", {job.job_id: score}) in pipeline.commands

    @pytest.mark.asyncio
    async def test_listing_skips_undecodable(self, redis_broker, mock_redis) -> None:
        job = search_job(attempts=1)
        mock_redis.lrange = AsyncMock(return_value=["bad", job.job_id])
        mock_redis.hmget = AsyncMock(return_value=["garbage", job.encode().decode()])

        dead = await redis_broker.dead_letters(SEARCH)

        assert [j.job_id for j in dead] == [job.job_id]

    @pytest.mark.asyncio
    async def test_purge_empty(self, redis_broker, mock_redis) -> None:
        mock_redis.lrange = AsyncMock(return_value=[])

        assert await redis_broker.purge_dead_letters(SEARCH) == 0


class TestPause:
    """Tests for pausing a queue."""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, redis_broker, mock_redis) -> None:
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.delete = AsyncMock(return_value=1)
        mock_redis.exists = AsyncMock(return_value=1)

        await redis_broker.pause(SEARCH)
        assert await redis_broker.is_paused(SEARCH) is True
        await redis_broker.resume(SEARCH)

        mock_redis.set.assert_awaited_once_with("lh:jobs:search-indexing.paused", 1)
        mock_redis.delete.assert_awaited_once_with("lh:jobs:search-indexing.paused")

    @pytest.mark.asyncio
    async def test_stats(self, redis_broker, pipeline) -> None:
        pipeline.results = [3, 1, 2, 0, 1]

        stats = await redis_broker.stats(SEARCH)

        assert stats.to_dict() == {
            "queue": "search-indexing",
            "waiting": 3,
            "delayed": 1,
            "in_flight": 2,
            "dead": 0,
            "paused": True,
        }
