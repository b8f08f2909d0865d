# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Declarative base and shared columns for LearnHub models."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from learnhub.utils.datetime import utc_now


class Base(DeclarativeBase):
    """Declarative base for all LearnHub models."""

    pass


class EntityMixin:
    """Columns every repository entity carries.

    Attributes:
        id: Opaque stable identifier (UUID string).
        created_at: Creation time.
        updated_at: Time of the last completed write.
        version: Incremented on every update, used for staleness checks.
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
