# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Cache-aside repository base.

Reads check the cache first and populate it on a miss. Writes go to the
backing store first and, once committed, delete every cache entry derived
from the entity so the next read repopulates it. The cache is never
written with data that did not just come from the store.

Failure semantics:
- Cache failures are absorbed by CacheClient; reads fall through to the
  store and writes still succeed.
- Store failures roll the session back and raise BackingStoreError (or
  ConflictError for constraint and version violations). The cache is left
  untouched since nothing was written.
- Not-found results are never cached.

Example:
    class CourseRepository(CachedRepository[Course, CourseSchema]):
        model = Course
        schema = CourseSchema
        cache_prefix = CachePrefix.COURSE

    repo = CourseRepository(session, cache, ttl=3600)
    course = await repo.create(CourseCreate(...))
    same = await repo.find_by_id(course.id)  # served from cache
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, ClassVar, Generic, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from learnhub.core.exceptions import (
    BackingStoreError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from learnhub.infrastructure.cache import CacheClient, CacheKeys, CacheTTL
from learnhub.infrastructure.database.models.base import Base
from learnhub.models.common import EntitySchema, Page, PaginationParams
from learnhub.utils.datetime import utc_now

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)
SchemaT = TypeVar("SchemaT", bound=EntitySchema)
T = TypeVar("T")

# Columns managed by the repository, never by callers
_MANAGED_FIELDS = frozenset({"id", "created_at", "updated_at", "version"})


class CachedRepository(Generic[ModelT, SchemaT]):
    """Generic cache-aside repository over one SQLAlchemy model.

    Subclasses set the class attributes and may override
    related_cache_keys() / related_cache_patterns() to invalidate values
    cached under other entities.

    Attributes:
        model: SQLAlchemy model class.
        schema: Pydantic schema returned to callers and stored in the cache.
        cache_prefix: Cache key prefix of the entity type.
        default_ttl: Entity TTL used when none is passed to the constructor.
        conflict_fields: Unique fields named in ConflictError messages.
        default_order: Column list queries sort by when none is requested.
    """

    model: ClassVar[type[Base]]
    schema: ClassVar[type[EntitySchema]]
    cache_prefix: ClassVar[str]
    default_ttl: ClassVar[int] = CacheTTL.MEDIUM
    conflict_fields: ClassVar[tuple[str, ...]] = ()
    default_order: ClassVar[str] = "created_at"

    def __init__(
        self,
        session: AsyncSession,
        cache: CacheClient,
        *,
        read_session: Optional[AsyncSession] = None,
        ttl: Optional[int] = None,
        list_ttl: int = CacheTTL.SHORT,
        timeout: float = 5.0,
    ) -> None:
        """Initialize the repository.

        Args:
            session: Session on the primary, used for writes.
            cache: Cache client shared by every repository.
            read_session: Session used for cache-miss reads (e.g. on a
                replica). Defaults to the primary session.
            ttl: Entity TTL in seconds.
            list_ttl: TTL of cached list pages in seconds.
            timeout: Per-call backing store timeout in seconds.
        """
        self.session = session
        self.read_session = read_session or session
        self.cache = cache
        self.ttl = ttl or self.default_ttl
        self.list_ttl = list_ttl
        self.timeout = timeout

    @property
    def entity_name(self) -> str:
        """Model name used in errors and logs."""
        return self.model.__name__

    # ========== Cache keys ==========

    def cache_key(self, entity_id: Any) -> str:
        """Cache key of one entity."""
        return CacheKeys.entity(self.cache_prefix, entity_id)

    def related_cache_keys(self, entity: SchemaT) -> list[str]:
        """Keys cached under other entities that embed this one."""
        return []

    def related_cache_patterns(self, entity: SchemaT) -> list[str]:
        """Patterns of values cached under other entities that depend on this one."""
        return []

    async def _invalidate(self, entity: SchemaT, previous: Optional[SchemaT] = None) -> None:
        """Drop the cache entries of an entity.

        Args:
            entity: The entity as now stored.
            previous: The entity before an update; entries cached under the
                entities it used to reference are dropped too.
        """
        states = [entity] if previous is None else [previous, entity]
        keys = [self.cache_key(entity.id)]
        patterns = [
            CacheKeys.entity_pattern(self.cache_prefix, entity.id),
            CacheKeys.list_pattern(self.cache_prefix),
        ]
        for state in states:
            keys.extend(self.related_cache_keys(state))
            patterns.extend(self.related_cache_patterns(state))
        keys = list(dict.fromkeys(keys))
        patterns = list(dict.fromkeys(patterns))
        if not await self.cache.invalidate(keys, patterns):
            logger.warning(
                "Cache invalidation incomplete for %s %s, entries expire within their TTL",
                self.entity_name,
                entity.id,
            )

    # ========== Store helpers ==========

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Run one backing store call under the timeout.

        Raises:
            BackingStoreError: On timeout or database failure.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise BackingStoreError(
                f"{self.entity_name} {operation} timed out after {self.timeout}s", e
            ) from e
        except SQLAlchemyError as e:
            raise BackingStoreError(f"{self.entity_name} {operation} failed", e) from e

    async def _commit(self, operation: str) -> None:
        """Commit the write session, rolling back on failure.

        Raises:
            ConflictError: On a constraint violation.
            BackingStoreError: On timeout or any other database failure.
        """
        try:
            await asyncio.wait_for(self.session.commit(), timeout=self.timeout)
        except IntegrityError as e:
            await self.session.rollback()
            fields = ", ".join(self.conflict_fields) or "unique fields"
            raise ConflictError(
                f"{self.entity_name} {operation} conflicts with an existing record ({fields})", e
            ) from e
        except asyncio.TimeoutError as e:
            await self.session.rollback()
            raise BackingStoreError(
                f"{self.entity_name} {operation} timed out after {self.timeout}s", e
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise BackingStoreError(f"{self.entity_name} {operation} failed", e) from e

    def _to_schema(self, entity: Base) -> SchemaT:
        return self.schema.model_validate(entity)  # type: ignore[return-value]

    def _from_cache(self, cached: Any) -> Optional[SchemaT]:
        try:
            return self.schema.model_validate(cached)  # type: ignore[return-value]
        except PydanticValidationError:
            logger.warning("Ignoring malformed cached %s entry", self.entity_name)
            return None

    def _column(self, name: str) -> Any:
        if name not in self.model.__table__.columns:
            raise ValidationError(
                f"{self.entity_name} has no field '{name}'",
                errors=[{"loc": [name], "msg": "unknown field"}],
            )
        return getattr(self.model, name)

    @staticmethod
    def _values(data: BaseModel | dict[str, Any], *, partial: bool) -> dict[str, Any]:
        if isinstance(data, BaseModel):
            return data.model_dump(exclude_unset=partial)
        return dict(data)

    def _apply_defaults(self, entity: Base) -> None:
        # Scalar column defaults are otherwise only applied at flush time
        for column in self.model.__table__.columns:
            default = column.default
            if default is None or not default.is_scalar:
                continue
            if getattr(entity, column.key, None) is None:
                setattr(entity, column.key, default.arg)

    # ========== Reads ==========

    async def find_by_id(self, entity_id: str) -> Optional[SchemaT]:
        """Find an entity, serving it from the cache when possible.

        Args:
            entity_id: Entity identifier.

        Returns:
            The entity, or None if it does not exist.

        Raises:
            BackingStoreError: If the cache missed and the store failed.
        """
        key = self.cache_key(entity_id)
        cached = await self.cache.get(key)
        if cached is not None:
            hit = self._from_cache(cached)
            if hit is not None:
                return hit

        entity = await self._run(
            "read",
            self.read_session.get(self.model, entity_id, populate_existing=True),
        )
        if entity is None:
            return None

        result = self._to_schema(entity)
        await self.cache.set(key, result.model_dump(mode="json"), ttl_seconds=self.ttl)
        return result

    async def get_by_id(self, entity_id: str) -> SchemaT:
        """Get an entity that must exist.

        Raises:
            NotFoundError: If the entity does not exist.
            BackingStoreError: If the store failed.
        """
        entity = await self.find_by_id(entity_id)
        if entity is None:
            raise NotFoundError(self.entity_name, entity_id)
        return entity

    async def find_by_ids(self, entity_ids: list[str]) -> list[SchemaT]:
        """Find several entities with one cache round trip and one query.

        Args:
            entity_ids: Entity identifiers.

        Returns:
            Found entities in request order; missing ids are skipped.
        """
        if not entity_ids:
            return []

        unique_ids = list(dict.fromkeys(entity_ids))
        cached = await self.cache.get_many([self.cache_key(i) for i in unique_ids])

        found: dict[str, SchemaT] = {}
        for entity_id, value in zip(unique_ids, cached):
            if value is not None:
                hit = self._from_cache(value)
                if hit is not None:
                    found[entity_id] = hit

        missing = [i for i in unique_ids if i not in found]
        if missing:
            result = await self._run(
                "batch read",
                self.read_session.execute(
                    select(self.model)
                    .where(self.model.id.in_(missing))
                    .execution_options(populate_existing=True)
                ),
            )
            for entity in result.scalars().all():
                schema = self._to_schema(entity)
                found[schema.id] = schema
                await self.cache.set(
                    self.cache_key(schema.id), schema.model_dump(mode="json"), ttl_seconds=self.ttl
                )

        return [found[i] for i in entity_ids if i in found]

    async def list(
        self,
        params: Optional[PaginationParams] = None,
        **filters: Any,
    ) -> Page[SchemaT]:
        """List entities one page at a time, filtered by field equality.

        Pages are cached under a key derived from the request, and every
        write to the entity type drops them.

        Args:
            params: Page request; first page of 20 by default.
            **filters: Field equality filters, e.g. status="published".

        Returns:
            The requested page.

        Raises:
            ValidationError: If a filter or the sort column is unknown.
            BackingStoreError: If the store failed.
        """
        params = params or PaginationParams()
        key = CacheKeys.list_key(self.cache_prefix, params.fingerprint(filters))
        return await self._cached_page(key, params, filters)

    async def _cached_page(
        self,
        key: str,
        params: PaginationParams,
        filters: dict[str, Any],
        order_by: Optional[str] = None,
    ) -> Page[SchemaT]:
        page_type = Page[self.schema]  # type: ignore[name-defined]

        cached = await self.cache.get(key)
        if cached is not None:
            try:
                return page_type.model_validate(cached)
            except PydanticValidationError:
                logger.warning("Ignoring malformed cached %s page", self.entity_name)

        conditions = [self._column(name) == value for name, value in filters.items()]
        sort_column = self._column(order_by or params.order_by or self.default_order)
        ordering = sort_column.desc() if params.descending and order_by is None else sort_column.asc()

        total_result = await self._run(
            "count",
            self.read_session.execute(
                select(func.count()).select_from(self.model).where(*conditions)
            ),
        )
        total = total_result.scalar_one()

        rows_result = await self._run(
            "list",
            self.read_session.execute(
                select(self.model)
                .where(*conditions)
                .order_by(ordering)
                .offset(params.offset)
                .limit(params.limit)
            ),
        )
        data = [self._to_schema(entity) for entity in rows_result.scalars().all()]

        page = page_type.create(data, total, params)
        await self.cache.set(key, page.model_dump(mode="json"), ttl_seconds=self.list_ttl)
        return page

    # ========== Writes ==========

    async def create(self, data: BaseModel | dict[str, Any]) -> SchemaT:
        """Insert an entity, then drop the cached pages of its type.

        Args:
            data: Create schema or field mapping. An "id" is generated
                when absent.

        Returns:
            The created entity.

        Raises:
            ValidationError: If a field is unknown or managed by the
                repository (created_at, updated_at, version).
            ConflictError: If a unique constraint is violated.
            BackingStoreError: If the store failed.
        """
        values = self._values(data, partial=False)
        entity_id = values.pop("id", None) or str(uuid.uuid4())
        for name in values:
            self._column(name)
            if name in _MANAGED_FIELDS:
                raise ValidationError(
                    f"{self.entity_name} field '{name}' cannot be set",
                    errors=[{"loc": [name], "msg": "read-only field"}],
                )

        now = utc_now()
        entity = self.model(id=entity_id, created_at=now, updated_at=now, version=1, **values)
        self._apply_defaults(entity)

        self.session.add(entity)
        await self._commit("create")

        result = self._to_schema(entity)
        await self._invalidate(result)
        logger.debug("%s created: %s", self.entity_name, entity_id)
        return result

    async def update(
        self,
        entity_id: str,
        patch: BaseModel | dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> SchemaT:
        """Apply a partial update, then invalidate the entity's cache entries.

        Args:
            entity_id: Entity identifier.
            patch: Update schema (only set fields apply) or field mapping.
            expected_version: When given, the update fails unless the
                stored version matches.

        Returns:
            The updated entity, with its version incremented.

        Raises:
            NotFoundError: If the entity does not exist.
            ValidationError: If the patch names an unknown or managed field.
            ConflictError: On version mismatch or constraint violation.
            BackingStoreError: If the store failed.
        """
        values = self._values(patch, partial=True)
        for name in values:
            self._column(name)
            if name in _MANAGED_FIELDS:
                raise ValidationError(
                    f"{self.entity_name} field '{name}' cannot be updated",
                    errors=[{"loc": [name], "msg": "read-only field"}],
                )

        entity = await self._run("read", self.session.get(self.model, entity_id))
        if entity is None:
            raise NotFoundError(self.entity_name, entity_id)

        if expected_version is not None and entity.version != expected_version:
            raise ConflictError(
                f"{self.entity_name} {entity_id} is at version {entity.version}, "
                f"expected {expected_version}"
            )

        previous = self._to_schema(entity)
        for name, value in values.items():
            setattr(entity, name, value)
        entity.version = entity.version + 1
        entity.updated_at = utc_now()

        await self._commit("update")

        result = self._to_schema(entity)
        await self._invalidate(result, previous=previous)
        logger.debug("%s updated: %s (version %d)", self.entity_name, entity_id, result.version)
        return result

    async def delete(self, entity_id: str) -> SchemaT:
        """Delete an entity, then invalidate its cache entries.

        Returns:
            The deleted entity as it was before deletion.

        Raises:
            NotFoundError: If the entity does not exist.
            ConflictError: If other records still reference it.
            BackingStoreError: If the store failed.
        """
        entity = await self._run("read", self.session.get(self.model, entity_id))
        if entity is None:
            raise NotFoundError(self.entity_name, entity_id)

        snapshot = self._to_schema(entity)
        await self._run("delete", self.session.delete(entity))
        await self._commit("delete")

        await self._invalidate(snapshot)
        logger.debug("%s deleted: %s", self.entity_name, entity_id)
        return snapshot
