# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Schemas shared by every repository: pagination and entity metadata."""

import hashlib
import json
import math
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class EntitySchema(BaseModel):
    """Fields every repository entity exposes."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: datetime
    updated_at: datetime
    version: int = Field(ge=1)


class PaginationParams(BaseModel):
    """Page request for list queries."""

    page: int = Field(default=1, ge=1, description="1-based page number")
    limit: int = Field(default=20, ge=1, le=100, description="Page size")
    order_by: str = Field(default="created_at", description="Sort column")
    descending: bool = Field(default=True, description="Sort direction")

    @property
    def offset(self) -> int:
        """Number of rows to skip."""
        return (self.page - 1) * self.limit

    def fingerprint(self, filters: dict[str, Any]) -> str:
        """Stable digest of this page request and its filters.

        Used as the cache key segment of a list page.
        """
        raw = json.dumps(
            {"params": self.model_dump(), "filters": filters},
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(raw.encode()).hexdigest()[:32]


class Page(BaseModel, Generic[T]):
    """One page of a list query."""

    data: list[T]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def create(cls, data: list[T], total: int, params: PaginationParams) -> "Page[T]":
        """Build a page and derive its navigation fields."""
        total_pages = math.ceil(total / params.limit) if total else 0
        return cls(
            data=data,
            total=total,
            page=params.page,
            limit=params.limit,
            total_pages=total_pages,
            has_next=params.page < total_pages,
            has_prev=params.page > 1,
        )


class MutationResult(BaseModel, Generic[T]):
    """Outcome of a write and the jobs it scheduled.

    A job that could not be scheduled is never reported as scheduled; it
    is named in deferred_jobs so the caller can tell the user, or retry.

    Attributes:
        entity: The written entity.
        scheduled_jobs: Ids of jobs durably scheduled.
        deferred_jobs: Job types that could not be scheduled.
    """

    entity: T
    scheduled_jobs: list[str] = Field(default_factory=list)
    deferred_jobs: list[str] = Field(default_factory=list)

    @property
    def fully_scheduled(self) -> bool:
        """True if every follow-up job was scheduled."""
        return not self.deferred_jobs
