# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job broker contract and lifecycle management.

A broker durably stores jobs per queue and hands them to workers:
- Highest priority first, FIFO within a priority tier.
- A dequeued job is leased to its worker until acked or nacked. Each
  lease carries a token; an ack or nack from a worker whose lease expired
  (and was handed to someone else) is ignored.
- A message that cannot be decoded is dead-lettered on dequeue.
- A paused queue keeps accepting jobs but hands none out.
- A nacked job is retried after an exponential backoff until its
  attempts are exhausted, then it moves to the dead-letter area where
  it stays until re-driven or purged by an operator.

Example:
    from learnhub.infrastructure.background import BrokerManager

    # Setup at application startup
    manager = BrokerManager(settings.queue, settings.redis)
    await manager.setup()

    job_id = await manager.broker.enqueue(job)

    # Shutdown drains in-flight enqueues
    await manager.shutdown()
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from dramatiq.common import compute_backoff

from learnhub.core.exceptions import BrokerUnavailableError, NotFoundError, ValidationError
from learnhub.infrastructure.background.jobs import JobDescriptor, QueueName

if TYPE_CHECKING:
    from learnhub.core.config.settings import QueueSettings, RedisSettings

logger = logging.getLogger(__name__)

# Score = rank * PRIORITY_SPAN + sequence keeps tiers apart and FIFO inside them
PRIORITY_SPAN = 10**12


def priority_score(job: JobDescriptor) -> int:
    """Ordering score of a job inside its queue; lower is served first."""
    if job.sequence is None:
        raise ValueError(f"Job {job.job_id} has no sequence assigned")
    return job.priority.rank * PRIORITY_SPAN + job.sequence


def retry_delay_ms(attempts_made: int, *, base_ms: int, max_ms: int) -> int:
    """Backoff before the next execution of a job.

    Doubles with every failed attempt, starting at base_ms, capped at max_ms.

    Args:
        attempts_made: Failed executions so far (at least 1).
        base_ms: Delay after the first failure.
        max_ms: Upper bound of the delay.
    """
    _, delay = compute_backoff(
        max(attempts_made - 1, 0),
        factor=base_ms,
        jitter=False,
        max_backoff=max_ms,
    )
    return int(delay)


def new_lease_token() -> str:
    """Token identifying one lease of a job."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a nack.

    Attributes:
        dead_lettered: True if the job exhausted its attempts.
        delay_ms: Backoff before the retry (0 when dead-lettered).
        attempts_made: Failed executions so far.
    """

    dead_lettered: bool
    delay_ms: int
    attempts_made: int


@dataclass(frozen=True)
class QueueStats:
    """Job counts of one queue.

    Attributes:
        queue: Queue name.
        waiting: Jobs eligible for dequeue.
        delayed: Jobs waiting out a retry backoff.
        in_flight: Jobs leased to workers.
        dead: Dead-lettered jobs.
        paused: Whether dequeue is suspended.
    """

    queue: str
    waiting: int
    delayed: int
    in_flight: int
    dead: int
    paused: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "queue": self.queue,
            "waiting": self.waiting,
            "delayed": self.delayed,
            "in_flight": self.in_flight,
            "dead": self.dead,
            "paused": self.paused,
        }


class JobState(str, Enum):
    """Where a job currently is inside a broker."""

    WAITING = "waiting"
    DELAYED = "delayed"
    IN_FLIGHT = "in_flight"
    DEAD = "dead"


@dataclass(frozen=True)
class JobInfo:
    """A stored job and its state."""

    job: JobDescriptor
    state: JobState


class JobBroker(ABC):
    """Durable job queue with priorities, retries and a dead-letter area.

    Subclasses implement the storage operations; this base class tracks
    in-flight enqueues so close() can drain them.

    Attributes:
        backoff_base_ms: Delay after the first failure.
        backoff_max_ms: Upper bound of retry delays.
    """

    def __init__(self, *, backoff_base_ms: int = 1000, backoff_max_ms: int = 300_000) -> None:
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self._closing = False
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_closing(self) -> bool:
        """Whether close() has been called."""
        return self._closing

    def retry_delay_ms(self, attempts_made: int) -> int:
        """Backoff before the next execution after attempts_made failures."""
        return retry_delay_ms(
            attempts_made, base_ms=self.backoff_base_ms, max_ms=self.backoff_max_ms
        )

    async def enqueue(self, job: JobDescriptor) -> str:
        """Durably store a job.

        Returns only once the backing storage acknowledged the write.
        The job is never executed inline.

        Args:
            job: Validated job descriptor.

        Returns:
            The job id.

        Raises:
            BrokerUnavailableError: If the broker is closing or the job
                could not be stored within the retry budget.
        """
        if self._closing:
            raise BrokerUnavailableError(
                f"Broker is shutting down, {job.job_type} job {job.job_id} not scheduled"
            )

        self._in_flight += 1
        self._idle.clear()
        try:
            return await self._enqueue(job)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def close(self, timeout: float = 10.0) -> None:
        """Stop accepting jobs, wait for in-flight enqueues, release resources.

        Args:
            timeout: Seconds to wait for in-flight enqueues.
        """
        self._closing = True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Broker closed with %d enqueue(s) still in flight after %.1fs",
                self._in_flight,
                timeout,
            )
        await self._close()

    @abstractmethod
    async def _enqueue(self, job: JobDescriptor) -> str:
        """Store a job and return its id."""
        ...

    async def _close(self) -> None:
        """Release storage resources."""
        return None

    @abstractmethod
    async def dequeue(self, queue: QueueName) -> Optional[JobDescriptor]:
        """Lease the next eligible job of a queue.

        Delayed retries whose backoff elapsed, and jobs whose lease
        expired, become eligible again first.

        Returns:
            The job, or None if no job is eligible.
        """
        ...

    @abstractmethod
    async def ack(self, job: JobDescriptor) -> bool:
        """Mark a leased job completed and forget it.

        Returns:
            False if the caller no longer holds the lease; nothing changes.
        """
        ...

    @abstractmethod
    async def nack(self, job: JobDescriptor, error: str) -> Optional[RetryDecision]:
        """Record a failed execution of a leased job.

        Args:
            job: The leased job.
            error: Description of the failure.

        Returns:
            Whether the job was scheduled for retry or dead-lettered, or
            None if the caller no longer holds the lease.
        """
        ...

    @abstractmethod
    async def get_job(self, queue: QueueName, job_id: str) -> Optional[JobInfo]:
        """Look up one job and where it currently is.

        Returns:
            The job and its state, or None if the broker does not hold it.

        Raises:
            ValidationError: If the stored message cannot be decoded.
        """
        ...

    @abstractmethod
    async def dead_letters(self, queue: QueueName) -> list[JobDescriptor]:
        """List dead-lettered jobs, most recent first.

        Undecodable messages are counted by stats() but not listed.
        """
        ...

    @abstractmethod
    async def retry_dead_letter(self, queue: QueueName, job_id: str) -> JobDescriptor:
        """Move a dead-lettered job back to its queue with fresh attempts.

        Raises:
            NotFoundError: If the job is not dead-lettered in the queue.
        """
        ...

    async def retry_dead_letters(self, queue: QueueName) -> int:
        """Re-drive every dead-lettered job of a queue.

        Undecodable messages stay dead-lettered.

        Returns:
            Number of jobs moved back to the queue.
        """
        redriven = 0
        for job in await self.dead_letters(queue):
            try:
                await self.retry_dead_letter(queue, job.job_id)
            except (NotFoundError, ValidationError) as e:
                logger.warning("Dead-lettered job %s not re-driven: %s", job.job_id, e)
                continue
            redriven += 1
        logger.info("Re-drove %d dead-lettered job(s) on %s", redriven, QueueName(queue).value)
        return redriven

    @abstractmethod
    async def purge_dead_letters(self, queue: QueueName) -> int:
        """Delete every dead-lettered job of a queue and return the count."""
        ...

    @abstractmethod
    async def pause(self, queue: QueueName) -> None:
        """Stop handing out jobs of a queue. Enqueue keeps working."""
        ...

    @abstractmethod
    async def resume(self, queue: QueueName) -> None:
        """Hand out jobs of a paused queue again."""
        ...

    @abstractmethod
    async def is_paused(self, queue: QueueName) -> bool:
        """Whether a queue is paused."""
        ...

    @abstractmethod
    async def stats(self, queue: QueueName) -> QueueStats:
        """Get job counts of a queue."""
        ...


class BrokerManager:
    """Manages the job broker lifecycle.

    Builds the configured backend, owns its storage connection and
    drains it on shutdown.

    Attributes:
        settings: Queue settings.
    """

    def __init__(
        self,
        settings: "QueueSettings",
        redis_settings: Optional["RedisSettings"] = None,
    ) -> None:
        self.settings = settings
        self._redis_settings = redis_settings
        self._broker: Optional[JobBroker] = None
        self._initialized = False

    @property
    def broker(self) -> JobBroker:
        """Get the configured broker.

        Raises:
            RuntimeError: If broker not initialized.
        """
        if self._broker is None:
            raise RuntimeError("Broker not initialized. Call setup() first.")
        return self._broker

    @property
    def is_initialized(self) -> bool:
        """Check if broker is initialized."""
        return self._initialized

    async def setup(self) -> JobBroker:
        """Build and connect the configured broker backend.

        Returns:
            The broker.

        Raises:
            BrokerUnavailableError: If the Redis backend cannot connect.
        """
        if self._initialized and self._broker is not None:
            return self._broker

        logger.info("Setting up job broker (backend: %s)...", self.settings.backend)

        if self.settings.backend == "memory":
            from learnhub.infrastructure.background.memory_broker import InMemoryJobBroker

            self._broker = InMemoryJobBroker(
                backoff_base_ms=self.settings.backoff_base_ms,
                backoff_max_ms=self.settings.backoff_max_ms,
                visibility_timeout=self.settings.visibility_timeout,
            )
            logger.info("Using in-memory job broker")
        else:
            from learnhub.infrastructure.background.redis_broker import RedisJobBroker

            if self._redis_settings is None:
                raise RuntimeError("Redis settings are required for the redis queue backend")
            broker = RedisJobBroker.from_settings(self.settings, self._redis_settings)
            await broker.connect()
            self._broker = broker

        self._initialized = True
        return self._broker

    async def shutdown(self) -> None:
        """Drain in-flight enqueues and close the broker."""
        if self._broker is not None:
            await self._broker.close(timeout=self.settings.shutdown_timeout)
            self._broker = None
            self._initialized = False
            logger.info("Broker shutdown complete")

    async def get_queue_stats(self) -> dict[str, Any]:
        """Get statistics of every known queue.

        Returns:
            Queue statistics dictionary.
        """
        if not self._initialized or self._broker is None:
            return {"status": "not_initialized"}

        stats: dict[str, Any] = {"broker_type": self.settings.backend}
        try:
            stats["queues"] = {
                queue.value: (await self._broker.stats(queue)).to_dict() for queue in QueueName
            }
            stats["status"] = "healthy"
        except BrokerUnavailableError as e:
            stats["status"] = "error"
            stats["error"] = str(e)

        return stats
