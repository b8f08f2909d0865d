# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pydantic schemas returned by repositories and services."""

from learnhub.models.common import EntitySchema, MutationResult, Page, PaginationParams
from learnhub.models.course import (
    AssignmentCreate,
    AssignmentSchema,
    AssignmentUpdate,
    CourseCreate,
    CourseSchema,
    CourseUpdate,
    LessonCreate,
    LessonSchema,
    LessonUpdate,
)
from learnhub.models.user import UserCreate, UserSchema, UserUpdate

__all__ = [
    "AssignmentCreate",
    "AssignmentSchema",
    "AssignmentUpdate",
    "CourseCreate",
    "CourseSchema",
    "CourseUpdate",
    "EntitySchema",
    "LessonCreate",
    "LessonSchema",
    "LessonUpdate",
    "MutationResult",
    "Page",
    "PaginationParams",
    "UserCreate",
    "UserSchema",
    "UserUpdate",
]
