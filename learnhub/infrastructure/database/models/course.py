# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Course authoring models: courses, lessons and assignments."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from learnhub.infrastructure.database.models.base import Base, EntityMixin


class Course(EntityMixin, Base):
    """A course authored by an educator."""

    __tablename__ = "courses"

    instructor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    difficulty: Mapped[str] = mapped_column(String(20), default="beginner", nullable=False)
    price: Mapped[Optional[float]] = mapped_column(Numeric(10, 2, asdecimal=False))
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True, nullable=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Lesson(EntityMixin, Base):
    """A lesson inside a course, ordered by order_number."""

    __tablename__ = "lessons"
    __table_args__ = (
        UniqueConstraint("course_id", "order_number", name="uq_lessons_course_order"),
    )

    course_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("courses.id", ondelete="CASCADE"), index=True, nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    lesson_type: Mapped[str] = mapped_column(String(20), default="text", nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text)
    video_asset_id: Mapped[Optional[str]] = mapped_column(String(36))
    order_number: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)


class Assignment(EntityMixin, Base):
    """A graded assignment attached to a course (optionally to a lesson)."""

    __tablename__ = "assignments"

    course_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("courses.id", ondelete="CASCADE"), index=True, nullable=False
    )
    lesson_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("lessons.id", ondelete="SET NULL")
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    max_points: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
