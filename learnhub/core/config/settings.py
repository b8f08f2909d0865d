# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration management for LearnHub.
Settings are loaded from environment variables with sensible defaults.

The Settings class is the main entry point and aggregates all subsettings.
A cached instance is provided via get_settings(); components receive the
settings they need through their constructors.

Example:
    >>> from learnhub.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> print(settings.environment)
    'development'
"""

from functools import lru_cache
from typing import Literal, Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL configuration for the backing store.

    Writes always go to the primary. Cache misses are served from the
    read replica when one is configured, otherwise from the primary.

    Attributes:
        user: PostgreSQL username.
        password: PostgreSQL password.
        host: Primary database host address.
        replica_host: Optional read replica host address.
        port: Database port number.
        database: Database name.
        pool_size: Connection pool size.
        max_overflow: Maximum overflow connections.
        statement_timeout: Per-call timeout in seconds for store operations.
    """

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        extra="ignore",
    )

    user: str = "learnhub"
    password: SecretStr = SecretStr("learnhub_password")
    host: str = "localhost"
    replica_host: str | None = None
    port: int = 5432
    database: str = "learnhub"
    pool_size: int = 10
    max_overflow: int = 20
    statement_timeout: float = 5.0

    def _build_url(self, host: str) -> str:
        pwd = self.password.get_secret_value()
        return f"postgresql+asyncpg://{self.user}:{pwd}@{host}:{self.port}/{self.database}"

    @property
    def url(self) -> str:
        """Build the async database URL of the primary."""
        return self._build_url(self.host)

    @property
    def replica_url(self) -> str:
        """Build the async database URL used for reads."""
        return self._build_url(self.replica_host or self.host)

    @property
    def has_replica(self) -> bool:
        """Check if a dedicated read replica is configured."""
        return bool(self.replica_host) and self.replica_host != self.host


class RedisSettings(BaseSettings):
    """Redis configuration shared by the cache store and the job broker.

    Attributes:
        host: Redis server host.
        port: Redis server port.
        password: Redis password.
        database: Redis database number.
        max_connections: Maximum connection pool size.
        socket_timeout: Socket read/write timeout in seconds.
        socket_connect_timeout: Socket connect timeout in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 6379
    password: SecretStr = SecretStr("")
    database: int = 0
    max_connections: int = 50
    socket_timeout: float = 2.0
    socket_connect_timeout: float = 2.0

    @property
    def url(self) -> str:
        """Build the Redis connection URL."""
        pwd = self.password.get_secret_value()
        auth = f":{pwd}@" if pwd else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.database}"


class CacheSettings(BaseSettings):
    """Cache-aside configuration.

    Attributes:
        key_prefix: Namespace prepended to every cache key.
        default_ttl: TTL in seconds when an entity type defines none.
        course_ttl: TTL for cached courses.
        lesson_ttl: TTL for cached lessons.
        assignment_ttl: TTL for cached assignments.
        user_ttl: TTL for cached users.
        list_ttl: TTL for cached list pages.
        operation_timeout: Per-call timeout in seconds; a timed out call
            is treated as a miss.
    """

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        extra="ignore",
    )

    key_prefix: str = "learnhub"
    default_ttl: int = Field(default=300, gt=0)
    course_ttl: int = Field(default=3600, gt=0)
    lesson_ttl: int = Field(default=3600, gt=0)
    assignment_ttl: int = Field(default=1800, gt=0)
    user_ttl: int = Field(default=900, gt=0)
    list_ttl: int = Field(default=60, gt=0)
    operation_timeout: float = 0.5


class QueueSettings(BaseSettings):
    """Background job broker configuration.

    Attributes:
        backend: Broker implementation ("redis" or "memory").
        namespace: Prefix of every broker key in Redis.
        default_attempts: Attempts allowed when a queue defines none.
        backoff_base_ms: Backoff factor in milliseconds between attempts.
        backoff_max_ms: Upper bound of a single backoff delay.
        enqueue_retries: Connection retries before a broker is unavailable.
        operation_timeout: Per-call timeout in seconds for broker calls.
        visibility_timeout: Seconds a dequeued job stays leased before it
            is handed to another worker.
        shutdown_timeout: Seconds to wait for in-flight enqueues on close.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUEUE_",
        extra="ignore",
    )

    backend: Literal["redis", "memory"] = "redis"
    namespace: str = "learnhub:jobs"
    default_attempts: int = Field(default=3, ge=1)
    backoff_base_ms: int = Field(default=1000, gt=0)
    backoff_max_ms: int = Field(default=300_000, gt=0)
    enqueue_retries: int = Field(default=3, ge=0)
    operation_timeout: float = 5.0
    visibility_timeout: int = 600
    shutdown_timeout: float = 10.0


class WorkerSettings(BaseSettings):
    """Background worker configuration.

    Attributes:
        poll_interval: Seconds to sleep when every queue is empty.
        job_timeout: Seconds a single handler may run.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKER_",
        extra="ignore",
    )

    poll_interval: float = 1.0
    job_timeout: float = 300.0


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    This is the primary configuration class for LearnHub.
    Use get_settings() to obtain a cached instance.

    Attributes:
        environment: Current environment.
        debug: Enable debug mode.
        log_level: Logging level.
        database: Backing store settings.
        redis: Redis settings.
        cache: Cache-aside settings.
        queue: Job broker settings.
        worker: Background worker settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Environment
    environment: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "DEBUG"

    # Subsettings - loaded with their own env prefixes
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production with a non-durable broker.
        """
        if self.environment == "production" and self.queue.backend == "memory":
            raise ValueError(
                "The in-memory job broker is not durable and cannot be used in "
                "production. Set QUEUE_BACKEND=redis."
            )
        return self

    @model_validator(mode="after")
    def validate_job_timeout(self) -> Self:
        """Ensure a running job cannot outlive its lease.

        Raises:
            ValueError: If WORKER_JOB_TIMEOUT is not below QUEUE_VISIBILITY_TIMEOUT.
        """
        if self.worker.job_timeout >= self.queue.visibility_timeout:
            raise ValueError(
                f"WORKER_JOB_TIMEOUT ({self.worker.job_timeout}s) must be below "
                f"QUEUE_VISIBILITY_TIMEOUT ({self.queue.visibility_timeout}s), otherwise "
                "running jobs are redelivered to other workers"
            )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call clear_settings_cache() if you need to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Call this if you need to reload settings from environment.
    Useful for testing or dynamic configuration updates.
    """
    get_settings.cache_clear()
