# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""User service for registration and profiles."""

import logging
from typing import Optional

from learnhub.core.exceptions import BrokerUnavailableError, ConflictError
from learnhub.domains.jobs import FollowUpJobs
from learnhub.infrastructure.background.producers import EmailQueue, SearchIndexingQueue
from learnhub.infrastructure.repositories import UserRepository
from learnhub.models.common import MutationResult
from learnhub.models.user import UserCreate, UserSchema, UserUpdate

logger = logging.getLogger(__name__)

WELCOME_TEMPLATE = "welcome"


class UserService:
    """Service for managing users.

    Attributes:
        users: User repository.
    """

    def __init__(
        self,
        users: UserRepository,
        email: EmailQueue,
        search: SearchIndexingQueue,
    ) -> None:
        """Initialize user service.

        Args:
            users: User repository bound to the request's session.
            email: Email job producer.
            search: Search indexing job producer.
        """
        self.users = users
        self._email = email
        self._search = search

    async def register(self, data: UserCreate) -> MutationResult[UserSchema]:
        """Register a user and schedule the welcome email.

        The welcome email is part of registration: if it cannot be
        scheduled the new user is removed again and the error propagates,
        so the caller can retry the whole registration.

        Args:
            data: Registration fields.

        Returns:
            The user and the scheduled jobs.

        Raises:
            ConflictError: If the email is already registered.
            BrokerUnavailableError: If the welcome email could not be scheduled.
            BackingStoreError: If the store failed.
        """
        if await self.users.find_by_email(data.email) is not None:
            raise ConflictError(f"Email {data.email} is already registered")

        user = await self.users.create(data)

        try:
            email_job = await self._email.send_email(
                user.email, WELCOME_TEMPLATE, {"first_name": user.first_name}
            )
        except BrokerUnavailableError:
            logger.error("Welcome email not scheduled, rolling back registration: %s", user.id)
            await self.users.delete(user.id)
            raise

        jobs = FollowUpJobs()
        jobs.scheduled.append(email_job)
        await jobs.schedule("search-index", self._search.index("user", user.id))

        logger.info("Registered user: id=%s, role=%s", user.id, user.role)
        return jobs.result(user)

    async def get_user(self, user_id: str) -> UserSchema:
        """Get a user.

        Raises:
            NotFoundError: If the user does not exist.
        """
        return await self.users.get_by_id(user_id)

    async def update_profile(
        self,
        user_id: str,
        patch: UserUpdate,
        expected_version: Optional[int] = None,
    ) -> MutationResult[UserSchema]:
        """Update profile fields and re-index the user.

        Raises:
            NotFoundError: If the user does not exist.
            ConflictError: On version mismatch.
        """
        user = await self.users.update(user_id, patch, expected_version=expected_version)

        jobs = FollowUpJobs()
        await jobs.schedule("search-index", self._search.index("user", user.id))

        logger.info("Updated profile: id=%s, version=%d", user.id, user.version)
        return jobs.result(user)
