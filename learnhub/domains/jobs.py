# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Follow-up job bookkeeping shared by application services."""

import logging
from typing import Awaitable, TypeVar

from learnhub.core.exceptions import BrokerUnavailableError
from learnhub.models.common import MutationResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FollowUpJobs:
    """Collects the jobs a write schedules.

    Jobs are optional side effects of the write: when the broker is
    unavailable the job is recorded as deferred instead of failing the
    request, and never reported as scheduled.
    """

    def __init__(self) -> None:
        self.scheduled: list[str] = []
        self.deferred: list[str] = []

    async def schedule(self, job_type: str, enqueue: Awaitable[str]) -> None:
        """Await one enqueue and record its outcome.

        Args:
            job_type: Job type, reported when deferred.
            enqueue: Pending producer call.
        """
        try:
            self.scheduled.append(await enqueue)
        except BrokerUnavailableError as e:
            logger.error("Scheduling deferred for %s job: %s", job_type, e)
            self.deferred.append(job_type)

    def result(self, entity: T) -> MutationResult[T]:
        """Build the mutation result for the written entity."""
        return MutationResult(
            entity=entity,
            scheduled_jobs=list(self.scheduled),
            deferred_jobs=list(self.deferred),
        )
