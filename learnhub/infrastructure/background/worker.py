# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job worker.

Pulls jobs from a broker and runs the handler registered for each job
type. A handler that returns acks the job; a handler that raises or
exceeds the job timeout nacks it, so the broker retries it with backoff
or dead-letters it.

Delivery is at-least-once, so handlers must tolerate running the same
job more than once (see IdempotentHandler).

Example:
    worker = JobWorker(broker, {"search-index": SearchIndexHandler(index, loader)})
    stop = asyncio.Event()
    await worker.run([QueueName.SEARCH_INDEXING], stop)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Protocol

from learnhub.core.exceptions import BrokerUnavailableError, LearnHubError
from learnhub.infrastructure.background.broker import JobBroker, RetryDecision
from learnhub.infrastructure.background.jobs import JobDescriptor, QueueName
from learnhub.utils.logging import bind_context, clear_context

logger = logging.getLogger(__name__)


class JobHandler(Protocol):
    """Executes one job."""

    async def __call__(self, job: JobDescriptor) -> None:
        ...


@dataclass(frozen=True)
class JobOutcome:
    """Result of processing one job.

    Attributes:
        job: The processed job.
        succeeded: True if the handler completed.
        retry: Broker decision when the handler failed; None if the
            lease was lost before the failure could be recorded.
        lease_lost: True if the broker ignored the ack or nack because
            the lease expired and the job was handed out again.
    """

    job: JobDescriptor
    succeeded: bool
    retry: Optional[RetryDecision] = None
    lease_lost: bool = False


class JobWorker:
    """Runs jobs from a broker with registered handlers.

    Attributes:
        handlers: Handler per job type.
        job_timeout: Seconds a handler may run.
        poll_interval: Seconds to wait when every queue is empty.
    """

    def __init__(
        self,
        broker: JobBroker,
        handlers: Mapping[str, JobHandler],
        *,
        job_timeout: float = 300.0,
        poll_interval: float = 1.0,
    ) -> None:
        self._broker = broker
        self.handlers = dict(handlers)
        self.job_timeout = job_timeout
        self.poll_interval = poll_interval

    async def process_next(self, queue: QueueName) -> Optional[JobOutcome]:
        """Dequeue and run one job.

        Args:
            queue: Queue to pull from.

        Returns:
            The outcome, or None if no job was eligible.
        """
        job = await self._broker.dequeue(queue)
        if job is None:
            return None

        bind_context(job_id=job.job_id, job_type=job.job_type, attempt=job.attempts_made + 1)
        try:
            return await self._execute(job)
        finally:
            clear_context()

    async def _fail(self, job: JobDescriptor, error: str) -> JobOutcome:
        retry = await self._broker.nack(job, error)
        if retry is None:
            logger.warning(
                "Lease lost before failure of %s %s was recorded", job.job_type, job.job_id
            )
            return JobOutcome(job, succeeded=False, lease_lost=True)
        return JobOutcome(job, succeeded=False, retry=retry)

    async def _execute(self, job: JobDescriptor) -> JobOutcome:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            error = f"No handler registered for {job.job_type}"
            logger.error("%s (job %s)", error, job.job_id)
            return await self._fail(job, error)

        try:
            await asyncio.wait_for(handler(job), timeout=self.job_timeout)
        except asyncio.TimeoutError:
            error = f"Timed out after {self.job_timeout}s"
            logger.error("Job %s %s: %s", job.job_type, job.job_id, error)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(
                "Job %s %s failed: %s", job.job_type, job.job_id, error, exc_info=True
            )
        else:
            if not await self._broker.ack(job):
                logger.warning(
                    "Job %s %s completed after its lease expired", job.job_type, job.job_id
                )
                return JobOutcome(job, succeeded=True, lease_lost=True)
            logger.debug("Job completed: %s %s", job.job_type, job.job_id)
            return JobOutcome(job, succeeded=True)

        return await self._fail(job, error)

    async def drain(self, queue: QueueName, max_jobs: Optional[int] = None) -> list[JobOutcome]:
        """Process jobs until the queue has no eligible job.

        Delayed retries are only picked up once their backoff elapsed.

        Args:
            queue: Queue to drain.
            max_jobs: Stop after this many jobs.

        Returns:
            Outcomes in processing order.
        """
        outcomes: list[JobOutcome] = []
        while max_jobs is None or len(outcomes) < max_jobs:
            outcome = await self.process_next(queue)
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    async def run(self, queues: Iterable[QueueName], stop: asyncio.Event) -> None:
        """Poll queues round-robin until stop is set.

        Args:
            queues: Queues to serve.
            stop: Set to end the loop after the current job.
        """
        queues = list(queues)
        logger.info("Worker started (queues: %s)", ", ".join(q.value for q in queues))

        while not stop.is_set():
            processed = False
            for queue in queues:
                if stop.is_set():
                    break
                try:
                    if await self.process_next(queue) is not None:
                        processed = True
                except BrokerUnavailableError as e:
                    logger.warning("Broker unavailable while serving %s: %s", queue.value, e)
                except LearnHubError as e:
                    logger.error("Error while serving %s: %s", queue.value, e, exc_info=True)

            if not processed:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

        logger.info("Worker stopped")
