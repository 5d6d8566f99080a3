"""
Error types for access-sync.

This module defines the exceptions raised across the engine:
- AccessSyncError: Base exception
- ValidationError: Malformed grant data (dropped, never retried)
- TransientStoreError: Store unavailable (left to event redelivery)
- PartialBatchFailure: One reconciliation page failed to commit
- BatchLimitExceeded: Write batch grew past the store's atomic cap
- ConfirmationRequiredError: Live reconciliation requested without confirmation

Invariants:
    - All errors inherit from AccessSyncError
    - Errors include context for debugging
    - No error here is shown to end users
"""

from __future__ import annotations

from typing import Any


class AccessSyncError(Exception):
    """Base exception for all access-sync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ACCESS_SYNC_ERROR"
        self.details = details or {}


class ValidationError(AccessSyncError):
    """Grant data is malformed.

    Raised when:
    - owner, grantee, scope or scope_id is missing
    - scope or access_level is not a known value

    Malformed data will not self-correct, so events carrying it are
    dropped rather than retried.
    """

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name},
        )
        self.field_name = field_name


class TransientStoreError(AccessSyncError):
    """Query or write failed because the store is unavailable.

    Handlers never retry this themselves; the event consumer leaves the
    record unacknowledged so the event source redelivers it.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            code="TRANSIENT_STORE_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class PartialBatchFailure(AccessSyncError):
    """One reconciliation page could not be committed.

    Attributes:
        cursor: Cursor the failed page started after (resume point)
        page_size: Number of experiences in the page
    """

    def __init__(self, message: str, cursor: str | None, page_size: int) -> None:
        super().__init__(
            message,
            code="PARTIAL_BATCH_FAILURE",
            details={"cursor": cursor, "page_size": page_size},
        )
        self.cursor = cursor
        self.page_size = page_size


class BatchLimitExceeded(AccessSyncError):
    """Write batch exceeded the store's atomic batch size."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Write batch exceeds store limit of {limit} documents",
            code="BATCH_LIMIT_EXCEEDED",
            details={"limit": limit},
        )
        self.limit = limit


class ConfirmationRequiredError(AccessSyncError):
    """Live reconciliation was requested without explicit confirmation."""

    def __init__(self) -> None:
        super().__init__(
            "Live reconciliation requires explicit confirmation. Run with dry_run first to preview.",
            code="CONFIRMATION_REQUIRED",
        )
