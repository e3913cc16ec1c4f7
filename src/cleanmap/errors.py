"""Typed failure outcomes raised by the core and mapped by the service layer.

Components raise these; CleanupService converts them into a failed
ServiceResult carrying the matching ErrorCode. Nothing in the core
retries a failed operation.
"""

from __future__ import annotations

import enum


class ErrorCode(str, enum.Enum):
    """Caller-visible failure classification."""
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    STORE_ERROR = "store_error"


class CleanupError(Exception):
    """Base class for every typed core failure."""
    code: ErrorCode = ErrorCode.STORE_ERROR


class InvalidInput(CleanupError):
    """Malformed report payload. Caller error, not retried."""
    code = ErrorCode.INVALID_INPUT


class NotFound(CleanupError):
    """No marker with the requested id."""
    code = ErrorCode.NOT_FOUND

    def __init__(self, marker_id: str) -> None:
        super().__init__(f"Marker not found: {marker_id}")
        self.marker_id = marker_id


class Conflict(CleanupError):
    """Illegal transition for the marker's current status."""
    code = ErrorCode.CONFLICT


class Forbidden(CleanupError):
    """Caller lacks the admin capability."""
    code = ErrorCode.FORBIDDEN


class StoreError(CleanupError):
    """Persistence medium unreadable or unwritable."""
    code = ErrorCode.STORE_ERROR


class StoreCorruptError(StoreError):
    """Backing file exists but does not hold a valid document."""


class StoreBusyError(StoreError):
    """Exclusive access to a store could not be obtained in time."""
