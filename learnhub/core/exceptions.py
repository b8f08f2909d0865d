# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain-level error taxonomy shared by repositories, producers and services.

Application services translate these into user-facing responses:
- NotFoundError, ConflictError, ValidationError are typed failures.
- BackingStoreError and BrokerUnavailableError are retryable failures;
  the caller decides whether to retry the whole operation.
- CacheDegradedError never reaches callers. Cache failures are logged
  and the read falls through to the backing store.
"""

from typing import Any, Optional


class LearnHubError(Exception):
    """Base exception for LearnHub errors.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
        retryable: Whether retrying the whole operation may succeed.
    """

    retryable: bool = False

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error description.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class NotFoundError(LearnHubError):
    """Raised when an entity is absent from the backing store."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(LearnHubError):
    """Raised on a uniqueness, version or state violation during a write."""

    pass


class ValidationError(LearnHubError):
    """Raised when input is malformed before it reaches the store or broker.

    Attributes:
        errors: Field-level error details, when available.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[list[dict[str, Any]]] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.errors = errors or []


class BackingStoreError(LearnHubError):
    """Raised on a transient or fatal backing store failure."""

    retryable = True


class BrokerUnavailableError(LearnHubError):
    """Raised when a job could not be durably scheduled."""

    retryable = True


class CacheDegradedError(LearnHubError):
    """Non-fatal cache failure. Logged by the cache client, never raised."""

    pass
