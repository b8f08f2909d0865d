# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy models for the LearnHub backing store."""

from learnhub.infrastructure.database.models.base import Base, EntityMixin
from learnhub.infrastructure.database.models.course import Assignment, Course, Lesson
from learnhub.infrastructure.database.models.user import User

__all__ = [
    "Base",
    "EntityMixin",
    "Assignment",
    "Course",
    "Lesson",
    "User",
]
