# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""User repository."""

from typing import Optional

from sqlalchemy import func, select

from learnhub.infrastructure.cache import CachePrefix
from learnhub.infrastructure.database.models import User
from learnhub.infrastructure.repositories.base import CachedRepository
from learnhub.models.user import UserSchema


class UserRepository(CachedRepository[User, UserSchema]):
    """Users, cached under user:{id}."""

    model = User
    schema = UserSchema
    cache_prefix = CachePrefix.USER
    default_ttl = 900
    conflict_fields = ("email",)

    async def find_by_email(self, email: str) -> Optional[UserSchema]:
        """Find a user by email, case-insensitively.

        Not cached; reads the primary so registration checks see the
        latest writes.

        Args:
            email: Email address.

        Returns:
            The user, or None.
        """
        result = await self._run(
            "read by email",
            self.session.execute(select(User).where(func.lower(User.email) == email.lower())),
        )
        entity = result.scalar_one_or_none()
        return self._to_schema(entity) if entity is not None else None
