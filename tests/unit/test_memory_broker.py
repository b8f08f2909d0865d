# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the in-memory job broker and the shared broker contract."""

import asyncio

import pytest

from learnhub.core.config.settings import QueueSettings
from learnhub.core.exceptions import BrokerUnavailableError, NotFoundError, ValidationError
from learnhub.infrastructure.background import (
    BrokerManager,
    InMemoryJobBroker,
    JobDescriptor,
    JobPriority,
    JobState,
    QueueName,
    SearchIndexJob,
    retry_delay_ms,
)

SEARCH = QueueName.SEARCH_INDEXING


def search_job(entity_id: str, priority: JobPriority = JobPriority.NORMAL, attempts: int = 3):
    """Build a search-index job for one course."""
    return JobDescriptor.build(
        SearchIndexJob(entity_type="course", entity_id=entity_id),
        priority=priority,
        attempts_allowed=attempts,
    )


class TestRetryDelay:
    """Tests for the backoff schedule."""

    def test_doubles_from_base(self) -> None:
        delays = [retry_delay_ms(n, base_ms=1000, max_ms=60_000) for n in (1, 2, 3, 4)]

        assert delays == [1000, 2000, 4000, 8000]

    def test_capped_at_max(self) -> None:
        assert retry_delay_ms(20, base_ms=1000, max_ms=60_000) == 60_000


class TestOrdering:
    """Tests for priority and FIFO ordering."""

    @pytest.mark.asyncio
    async def test_higher_priority_served_first(self, broker) -> None:
        await broker.enqueue(search_job("A", JobPriority.LOW))
        await broker.enqueue(search_job("B", JobPriority.HIGH))
        await broker.enqueue(search_job("C", JobPriority.NORMAL))

        order = []
        while (job := await broker.dequeue(SEARCH)) is not None:
            order.append(job.payload.entity_id)

        assert order == ["B", "C", "A"]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, broker) -> None:
        for entity_id in ("c1", "c2", "c3"):
            await broker.enqueue(search_job(entity_id))

        first = await broker.dequeue(SEARCH)
        second = await broker.dequeue(SEARCH)

        assert (first.payload.entity_id, second.payload.entity_id) == ("c1", "c2")

    @pytest.mark.asyncio
    async def test_queues_are_independent(self, broker) -> None:
        await broker.enqueue(search_job("c1"))

        assert await broker.dequeue(QueueName.EMAIL) is None
        assert await broker.dequeue(SEARCH) is not None

    @pytest.mark.asyncio
    async def test_empty_queue(self, broker) -> None:
        assert await broker.dequeue(SEARCH) is None


class TestRetries:
    """Tests for retry backoff and dead-lettering."""

    @pytest.mark.asyncio
    async def test_failing_job_is_retried_then_dead_lettered(self, broker, clock) -> None:
        job_id = await broker.enqueue(search_job("c1", attempts=3))
        executions = 0
        delays = []

        while True:
            job = await broker.dequeue(SEARCH)
            if job is None:
                break
            executions += 1
            decision = await broker.nack(job, "index unavailable")
            if decision.dead_lettered:
                break
            delays.append(decision.delay_ms)
            assert await broker.dequeue(SEARCH) is None
            clock.advance(decision.delay_ms)

        assert executions == 3
        assert delays == [1000, 2000]

        clock.advance(3_600_000)
        assert await broker.dequeue(SEARCH) is None

        dead = await broker.dead_letters(SEARCH)
        assert [job.job_id for job in dead] == [job_id]
        assert dead[0].attempts_made == 3
        assert dead[0].last_error == "index unavailable"

    @pytest.mark.asyncio
    async def test_retry_keeps_priority_position(self, broker, clock) -> None:
        """Test a retried high priority job goes ahead of waiting normal jobs."""
        await broker.enqueue(search_job("urgent", JobPriority.HIGH))
        job = await broker.dequeue(SEARCH)
        decision = await broker.nack(job, "flaky")
        await broker.enqueue(search_job("routine"))

        clock.advance(decision.delay_ms)
        retried = await broker.dequeue(SEARCH)

        assert retried.payload.entity_id == "urgent"
        assert retried.attempts_made == 1

    @pytest.mark.asyncio
    async def test_ack_forgets_job(self, broker) -> None:
        await broker.enqueue(search_job("c1"))
        job = await broker.dequeue(SEARCH)

        await broker.ack(job)

        stats = await broker.stats(SEARCH)
        assert (stats.waiting, stats.in_flight, stats.delayed, stats.dead) == (0, 0, 0, 0)

    @pytest.mark.asyncio
    async def test_expired_lease_is_redelivered(self, broker, clock) -> None:
        await broker.enqueue(search_job("c1"))
        first = await broker.dequeue(SEARCH)

        assert await broker.dequeue(SEARCH) is None
        clock.advance(30_000)
        again = await broker.dequeue(SEARCH)

        assert again.job_id == first.job_id


class TestLeases:
    """Tests for lease tokens fencing ack and nack."""

    @pytest.mark.asyncio
    async def test_dequeued_job_carries_token(self, broker) -> None:
        await broker.enqueue(search_job("c1"))

        job = await broker.dequeue(SEARCH)

        assert job.lease_token
        assert JobDescriptor.decode(job.encode()).lease_token is None

    @pytest.mark.asyncio
    async def test_late_ack_after_redelivery_is_ignored(self, broker, clock) -> None:
        await broker.enqueue(search_job("c1"))
        stale = await broker.dequeue(SEARCH)
        clock.advance(30_000)
        current = await broker.dequeue(SEARCH)

        assert await broker.ack(stale) is False
        assert (await broker.stats(SEARCH)).in_flight == 1

        assert await broker.ack(current) is True
        assert await broker.dequeue(SEARCH) is None

    @pytest.mark.asyncio
    async def test_ack_after_expiry_keeps_requeued_job(self, broker, clock) -> None:
        """Test a late ack leaves a job requeued by lease expiry in place."""
        job_id = await broker.enqueue(search_job("c1"))
        stale = await broker.dequeue(SEARCH)
        await broker.pause(SEARCH)
        clock.advance(30_000)
        assert await broker.dequeue(SEARCH) is None

        assert await broker.ack(stale) is False
        await broker.resume(SEARCH)
        redelivered = await broker.dequeue(SEARCH)

        assert redelivered.job_id == job_id

    @pytest.mark.asyncio
    async def test_late_nack_does_not_duplicate_job(self, broker, clock) -> None:
        await broker.enqueue(search_job("c1"))
        stale = await broker.dequeue(SEARCH)
        clock.advance(30_000)
        current = await broker.dequeue(SEARCH)

        assert await broker.nack(stale, "too slow") is None
        stats = await broker.stats(SEARCH)
        assert (stats.waiting, stats.delayed, stats.in_flight) == (0, 0, 1)

        assert await broker.ack(current) is True
        clock.advance(3_600_000)
        assert await broker.dequeue(SEARCH) is None

    @pytest.mark.asyncio
    async def test_ack_without_token_is_ignored(self, broker) -> None:
        job = search_job("c1")
        await broker.enqueue(job)
        await broker.dequeue(SEARCH)

        assert await broker.ack(job) is False


class TestUndecodableMessages:
    """Tests for messages that cannot be decoded."""

    @pytest.mark.asyncio
    async def test_dead_lettered_and_next_job_served(self, broker) -> None:
        bad_id = await broker.enqueue(search_job("c1"))
        await broker.enqueue(search_job("c2"))
        broker._state(SEARCH).messages[bad_id] = b"not a dramatiq message"

        job = await broker.dequeue(SEARCH)

        assert job.payload.entity_id == "c2"
        stats = await broker.stats(SEARCH)
        assert (stats.dead, stats.in_flight, stats.waiting) == (1, 1, 0)
        assert await broker.dead_letters(SEARCH) == []

    @pytest.mark.asyncio
    async def test_missing_message_is_dropped(self, broker) -> None:
        gone_id = await broker.enqueue(search_job("c1"))
        await broker.enqueue(search_job("c2"))
        del broker._state(SEARCH).messages[gone_id]

        job = await broker.dequeue(SEARCH)

        assert job.payload.entity_id == "c2"
        assert await broker.dequeue(SEARCH) is None

    @pytest.mark.asyncio
    async def test_stays_dead_on_bulk_retry(self, broker) -> None:
        bad_id = await broker.enqueue(search_job("c1"))
        broker._state(SEARCH).messages[bad_id] = b"garbage"
        await broker.dequeue(SEARCH)

        assert await broker.retry_dead_letters(SEARCH) == 0
        with pytest.raises(ValidationError):
            await broker.retry_dead_letter(SEARCH, bad_id)
        assert (await broker.stats(SEARCH)).dead == 1


class TestGetJob:
    """Tests for looking up a single job."""

    @pytest.mark.asyncio
    async def test_states(self, broker) -> None:
        job_id = await broker.enqueue(search_job("c1", attempts=2))
        assert (await broker.get_job(SEARCH, job_id)).state == JobState.WAITING

        job = await broker.dequeue(SEARCH)
        assert (await broker.get_job(SEARCH, job_id)).state == JobState.IN_FLIGHT

        await broker.nack(job, "flaky")
        info = await broker.get_job(SEARCH, job_id)
        assert info.state == JobState.DELAYED
        assert info.job.attempts_made == 1
        assert info.job.last_error == "flaky"

    @pytest.mark.asyncio
    async def test_dead_and_completed(self, broker) -> None:
        dead_id = await broker.enqueue(search_job("c1", attempts=1))
        await broker.nack(await broker.dequeue(SEARCH), "boom")
        done_id = await broker.enqueue(search_job("c2"))
        await broker.ack(await broker.dequeue(SEARCH))

        assert (await broker.get_job(SEARCH, dead_id)).state == JobState.DEAD
        assert await broker.get_job(SEARCH, done_id) is None
        assert await broker.get_job(QueueName.EMAIL, dead_id) is None


class TestPause:
    """Tests for pausing a queue."""

    @pytest.mark.asyncio
    async def test_paused_queue_keeps_jobs(self, broker) -> None:
        await broker.pause(SEARCH)
        await broker.enqueue(search_job("c1"))

        assert await broker.is_paused(SEARCH) is True
        assert await broker.dequeue(SEARCH) is None
        stats = await broker.stats(SEARCH)
        assert stats.waiting == 1
        assert stats.to_dict()["paused"] is True

        await broker.resume(SEARCH)

        assert await broker.is_paused(SEARCH) is False
        assert (await broker.dequeue(SEARCH)).payload.entity_id == "c1"

    @pytest.mark.asyncio
    async def test_pause_is_per_queue(self, broker) -> None:
        await broker.pause(QueueName.EMAIL)
        await broker.enqueue(search_job("c1"))

        assert await broker.dequeue(SEARCH) is not None

    @pytest.mark.asyncio
    async def test_expired_leases_requeued_while_paused(self, broker, clock) -> None:
        await broker.enqueue(search_job("c1"))
        await broker.dequeue(SEARCH)
        await broker.pause(SEARCH)
        clock.advance(30_000)

        assert await broker.dequeue(SEARCH) is None
        stats = await broker.stats(SEARCH)
        assert (stats.waiting, stats.in_flight) == (1, 0)


class TestDeadLetters:
    """Tests for dead-letter management."""

    async def _dead_letter(self, broker, entity_id: str) -> str:
        job_id = await broker.enqueue(search_job(entity_id, attempts=1))
        job = await broker.dequeue(SEARCH)
        await broker.nack(job, "boom")
        return job_id

    @pytest.mark.asyncio
    async def test_most_recent_first(self, broker) -> None:
        first = await self._dead_letter(broker, "c1")
        second = await self._dead_letter(broker, "c2")

        assert [job.job_id for job in await broker.dead_letters(SEARCH)] == [second, first]

    @pytest.mark.asyncio
    async def test_retry_dead_letter_resets_attempts(self, broker) -> None:
        job_id = await self._dead_letter(broker, "c1")

        redriven = await broker.retry_dead_letter(SEARCH, job_id)
        job = await broker.dequeue(SEARCH)

        assert redriven.attempts_made == 0
        assert job.job_id == job_id
        assert job.last_error is None
        assert await broker.dead_letters(SEARCH) == []

    @pytest.mark.asyncio
    async def test_retry_unknown_dead_letter(self, broker) -> None:
        with pytest.raises(NotFoundError):
            await broker.retry_dead_letter(SEARCH, "missing")

    @pytest.mark.asyncio
    async def test_purge(self, broker) -> None:
        await self._dead_letter(broker, "c1")
        await self._dead_letter(broker, "c2")

        assert await broker.purge_dead_letters(SEARCH) == 2
        assert (await broker.stats(SEARCH)).dead == 0


class TestShutdown:
    """Tests for closing a broker."""

    @pytest.mark.asyncio
    async def test_enqueue_after_close_rejected(self, broker) -> None:
        await broker.close(timeout=0.1)

        assert broker.is_closing is True
        with pytest.raises(BrokerUnavailableError, match="shutting down"):
            await broker.enqueue(search_job("c1"))

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_enqueue(self, clock) -> None:
        release = asyncio.Event()

        class SlowBroker(InMemoryJobBroker):
            async def _enqueue(self, job):
                await release.wait()
                return await super()._enqueue(job)

        broker = SlowBroker(clock=clock)
        pending = asyncio.create_task(broker.enqueue(search_job("c1")))
        await asyncio.sleep(0)

        closing = asyncio.create_task(broker.close(timeout=1.0))
        await asyncio.sleep(0)
        assert not closing.done()

        release.set()
        job_id = await pending
        await closing

        assert job_id
        assert (await broker.stats(SEARCH)).waiting == 1


class TestBrokerManager:
    """Tests for BrokerManager."""

    @pytest.mark.asyncio
    async def test_memory_backend(self) -> None:
        manager = BrokerManager(QueueSettings(backend="memory"))

        broker = await manager.setup()

        assert isinstance(broker, InMemoryJobBroker)
        assert manager.is_initialized is True
        assert await manager.setup() is broker

    @pytest.mark.asyncio
    async def test_stats_before_setup(self) -> None:
        manager = BrokerManager(QueueSettings(backend="memory"))

        assert await manager.get_queue_stats() == {"status": "not_initialized"}
        with pytest.raises(RuntimeError):
            _ = manager.broker

    @pytest.mark.asyncio
    async def test_stats_cover_every_queue(self) -> None:
        manager = BrokerManager(QueueSettings(backend="memory"))
        broker = await manager.setup()
        await broker.enqueue(search_job("c1"))

        stats = await manager.get_queue_stats()

        assert stats["status"] == "healthy"
        assert set(stats["queues"]) == {queue.value for queue in QueueName}
        assert stats["queues"]["search-indexing"]["waiting"] == 1

    @pytest.mark.asyncio
    async def test_shutdown_closes_broker(self) -> None:
        manager = BrokerManager(QueueSettings(backend="memory"))
        broker = await manager.setup()

        await manager.shutdown()

        assert broker.is_closing is True
        assert manager.is_initialized is False
