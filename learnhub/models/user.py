# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""User schemas."""

from typing import Literal

from pydantic import BaseModel, EmailStr, Field

from learnhub.models.common import EntitySchema

UserRole = Literal["student", "educator", "admin"]


class UserCreate(BaseModel):
    """Input for registering a user."""

    id: str | None = None
    email: EmailStr
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: UserRole = "student"


class UserUpdate(BaseModel):
    """Profile fields a user may change."""

    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    bio: str | None = Field(default=None, max_length=1000)
    avatar_url: str | None = Field(default=None, max_length=500)


class UserSchema(EntitySchema):
    """A user as returned by the repository."""

    email: str
    first_name: str
    last_name: str
    role: str
    bio: str | None = None
    avatar_url: str | None = None
    status: str

    @property
    def full_name(self) -> str:
        """First and last name joined."""
        return f"{self.first_name} {self.last_name}"
