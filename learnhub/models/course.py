# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Course, lesson and assignment schemas.

Create schemas validate input before it reaches the backing store,
Update schemas carry partial patches (unset fields are left untouched),
and the plain schemas are what repositories return and cache.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from learnhub.models.common import EntitySchema

CourseStatus = Literal["draft", "published", "archived"]
Difficulty = Literal["beginner", "intermediate", "advanced"]
LessonType = Literal["text", "video", "quiz"]


class CourseCreate(BaseModel):
    """Input for a new course."""

    id: str | None = Field(default=None, description="Optional client-chosen id")
    instructor_id: str
    title: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=255, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    description: str | None = None
    category: str | None = Field(default=None, max_length=100)
    difficulty: Difficulty = "beginner"
    price: float | None = Field(default=None, ge=0)


class CourseUpdate(BaseModel):
    """Partial update of a course."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    category: str | None = Field(default=None, max_length=100)
    difficulty: Difficulty | None = None
    price: float | None = Field(default=None, ge=0)
    status: CourseStatus | None = None
    published_at: datetime | None = None


class CourseSchema(EntitySchema):
    """A course as returned by the repository."""

    instructor_id: str
    title: str
    slug: str
    description: str | None = None
    category: str | None = None
    difficulty: str
    price: float | None = None
    status: str
    published_at: datetime | None = None


class LessonCreate(BaseModel):
    """Input for a new lesson."""

    id: str | None = None
    course_id: str
    title: str = Field(min_length=1, max_length=255)
    lesson_type: LessonType = "text"
    content: str | None = None
    video_asset_id: str | None = None
    order_number: int = Field(ge=0)
    duration_minutes: int | None = Field(default=None, ge=0)


class LessonUpdate(BaseModel):
    """Partial update of a lesson."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    lesson_type: LessonType | None = None
    content: str | None = None
    video_asset_id: str | None = None
    order_number: int | None = Field(default=None, ge=0)
    duration_minutes: int | None = Field(default=None, ge=0)


class LessonSchema(EntitySchema):
    """A lesson as returned by the repository."""

    course_id: str
    title: str
    lesson_type: str
    content: str | None = None
    video_asset_id: str | None = None
    order_number: int
    duration_minutes: int | None = None


class AssignmentCreate(BaseModel):
    """Input for a new assignment."""

    id: str | None = None
    course_id: str
    lesson_id: str | None = None
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    due_date: datetime | None = None
    max_points: int = Field(default=100, ge=1)


class AssignmentUpdate(BaseModel):
    """Partial update of an assignment."""

    lesson_id: str | None = None
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    due_date: datetime | None = None
    max_points: int | None = Field(default=None, ge=1)


class AssignmentSchema(EntitySchema):
    """An assignment as returned by the repository."""

    course_id: str
    lesson_id: str | None = None
    title: str
    description: str | None = None
    due_date: datetime | None = None
    max_points: int
