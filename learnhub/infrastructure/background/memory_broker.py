# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""In-process job broker for tests and local development.

Follows the same contract as RedisJobBroker, storing each job in its
encoded wire form so that every dequeue rebuilds the descriptor from
serialized data. Time comes from an injectable millisecond clock, so
tests can step through retry backoffs without sleeping.

Not durable across restarts; rejected in production by Settings.
"""

import heapq
import logging
import time
from typing import Callable, NamedTuple, Optional

from learnhub.core.exceptions import NotFoundError, ValidationError
from learnhub.infrastructure.background.broker import (
    JobBroker,
    JobInfo,
    JobState,
    QueueStats,
    RetryDecision,
    new_lease_token,
    priority_score,
)
from learnhub.infrastructure.background.jobs import JobDescriptor, QueueName

logger = logging.getLogger(__name__)


def _system_clock() -> int:
    return int(time.time() * 1000)


class _Lease(NamedTuple):
    until: int
    score: int
    token: str


class _QueueState:
    """Storage of one queue."""

    def __init__(self) -> None:
        self.waiting: list[tuple[int, str]] = []
        self.delayed: list[tuple[int, int, str]] = []
        self.leases: dict[str, _Lease] = {}
        self.dead: list[str] = []
        self.messages: dict[str, bytes] = {}
        self.paused = False


class InMemoryJobBroker(JobBroker):
    """Heap-backed broker living in the current process.

    Attributes:
        visibility_timeout: Seconds a dequeued job stays leased.
    """

    def __init__(
        self,
        *,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 300_000,
        visibility_timeout: int = 600,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        """Initialize the broker.

        Args:
            backoff_base_ms: Delay after the first failure.
            backoff_max_ms: Upper bound of retry delays.
            visibility_timeout: Seconds a dequeued job stays leased.
            clock: Returns the current time in epoch milliseconds.
        """
        super().__init__(backoff_base_ms=backoff_base_ms, backoff_max_ms=backoff_max_ms)
        self.visibility_timeout = visibility_timeout
        self._clock = clock or _system_clock
        self._queues: dict[QueueName, _QueueState] = {}
        self._sequence = 0

    def _state(self, queue: QueueName) -> _QueueState:
        return self._queues.setdefault(QueueName(queue), _QueueState())

    async def _enqueue(self, job: JobDescriptor) -> str:
        state = self._state(job.queue_name)
        self._sequence += 1
        stored = job.model_copy(update={"sequence": self._sequence, "lease_token": None})

        state.messages[stored.job_id] = stored.encode()
        heapq.heappush(state.waiting, (priority_score(stored), stored.job_id))

        logger.debug(
            "Job enqueued: %s %s (queue: %s, priority: %s)",
            stored.job_type,
            stored.job_id,
            stored.queue_name.value,
            stored.priority.value,
        )
        return stored.job_id

    def _promote(self, state: _QueueState, now: int) -> None:
        while state.delayed and state.delayed[0][0] <= now:
            _, score, job_id = heapq.heappop(state.delayed)
            heapq.heappush(state.waiting, (score, job_id))

        expired = [job_id for job_id, lease in state.leases.items() if lease.until <= now]
        for job_id in expired:
            lease = state.leases.pop(job_id)
            heapq.heappush(state.waiting, (lease.score, job_id))
            logger.warning("Lease expired, job requeued: %s", job_id)

    def _release(self, state: _QueueState, job: JobDescriptor, operation: str) -> Optional[_Lease]:
        lease = state.leases.get(job.job_id)
        if lease is None or lease.token != job.lease_token:
            logger.warning(
                "Ignoring %s of %s %s: lease no longer held", operation, job.job_type, job.job_id
            )
            return None
        return state.leases.pop(job.job_id)

    async def dequeue(self, queue: QueueName) -> Optional[JobDescriptor]:
        state = self._state(queue)
        now = self._clock()
        self._promote(state, now)

        while state.waiting and not state.paused:
            score, job_id = heapq.heappop(state.waiting)
            body = state.messages.get(job_id)
            if body is None:
                logger.warning("Dropping job %s with no stored message", job_id)
                continue

            try:
                job = JobDescriptor.decode(body)
            except ValidationError as e:
                state.dead.insert(0, job_id)
                logger.error("Undecodable job message %s dead-lettered: %s", job_id, e)
                continue

            token = new_lease_token()
            state.leases[job_id] = _Lease(now + self.visibility_timeout * 1000, score, token)
            return job.model_copy(update={"lease_token": token})

        return None

    async def ack(self, job: JobDescriptor) -> bool:
        state = self._state(job.queue_name)
        if self._release(state, job, "ack") is None:
            return False
        state.messages.pop(job.job_id, None)
        return True

    async def nack(self, job: JobDescriptor, error: str) -> Optional[RetryDecision]:
        state = self._state(job.queue_name)
        lease = self._release(state, job, "nack")
        if lease is None:
            return None

        attempts_made = job.attempts_made + 1
        failed = job.model_copy(
            update={"attempts_made": attempts_made, "last_error": error, "lease_token": None}
        )
        state.messages[job.job_id] = failed.encode()

        if attempts_made >= job.attempts_allowed:
            state.dead.insert(0, job.job_id)
            logger.error(
                "Job dead-lettered after %d attempt(s): %s %s: %s",
                attempts_made,
                job.job_type,
                job.job_id,
                error,
            )
            return RetryDecision(dead_lettered=True, delay_ms=0, attempts_made=attempts_made)

        delay = self.retry_delay_ms(attempts_made)
        heapq.heappush(state.delayed, (self._clock() + delay, lease.score, job.job_id))
        logger.warning(
            "Job failed, retrying in %dms (attempt %d/%d): %s %s",
            delay,
            attempts_made,
            job.attempts_allowed,
            job.job_type,
            job.job_id,
        )
        return RetryDecision(dead_lettered=False, delay_ms=delay, attempts_made=attempts_made)

    async def get_job(self, queue: QueueName, job_id: str) -> Optional[JobInfo]:
        state = self._state(queue)
        body = state.messages.get(job_id)
        if body is None:
            return None

        if job_id in state.leases:
            job_state = JobState.IN_FLIGHT
        elif job_id in state.dead:
            job_state = JobState.DEAD
        elif any(delayed_id == job_id for _, _, delayed_id in state.delayed):
            job_state = JobState.DELAYED
        else:
            job_state = JobState.WAITING
        return JobInfo(JobDescriptor.decode(body), job_state)

    async def dead_letters(self, queue: QueueName) -> list[JobDescriptor]:
        state = self._state(queue)
        jobs = []
        for job_id in state.dead:
            try:
                jobs.append(JobDescriptor.decode(state.messages[job_id]))
            except ValidationError:
                logger.warning("Skipping undecodable dead-lettered message %s", job_id)
        return jobs

    async def retry_dead_letter(self, queue: QueueName, job_id: str) -> JobDescriptor:
        state = self._state(queue)
        if job_id not in state.dead:
            raise NotFoundError("DeadLetterJob", job_id)

        job = JobDescriptor.decode(state.messages[job_id]).model_copy(
            update={"attempts_made": 0, "last_error": None}
        )
        state.dead.remove(job_id)
        state.messages[job_id] = job.encode()
        heapq.heappush(state.waiting, (priority_score(job), job_id))

        logger.info("Dead-lettered job re-driven: %s %s", job.job_type, job_id)
        return job

    async def purge_dead_letters(self, queue: QueueName) -> int:
        state = self._state(queue)
        purged = len(state.dead)
        for job_id in state.dead:
            state.messages.pop(job_id, None)
        state.dead.clear()
        return purged

    async def pause(self, queue: QueueName) -> None:
        self._state(queue).paused = True
        logger.info("Queue paused: %s", QueueName(queue).value)

    async def resume(self, queue: QueueName) -> None:
        self._state(queue).paused = False
        logger.info("Queue resumed: %s", QueueName(queue).value)

    async def is_paused(self, queue: QueueName) -> bool:
        return self._state(queue).paused

    async def stats(self, queue: QueueName) -> QueueStats:
        state = self._state(queue)
        return QueueStats(
            queue=QueueName(queue).value,
            waiting=len(state.waiting),
            delayed=len(state.delayed),
            in_flight=len(state.leases),
            dead=len(state.dead),
            paused=state.paused,
        )
