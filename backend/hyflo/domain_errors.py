"""Domain-level exception primitives with stable machine-readable codes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class DomainError(Exception):
    """Use-case level error with stable code and HTTP mapping."""

    code: str
    http_status: int
    message: str
    details: dict[str, Any] | None = None

    retryable = False

    def __str__(self) -> str:
        return self.message


class ValidationError(DomainError):
    """Client-fixable input problem (missing field, malformed reason)."""

    def __init__(self, message: str, *, code: str = "VALIDATION_FAILED", details: dict[str, Any] | None = None):
        super().__init__(code=code, http_status=422, message=message, details=details)


class ConflictError(DomainError):
    """Another reading already occupies the slot, or the version moved on."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        code: str = "READING_SLOT_CONFLICT",
        conflicting_reading_id: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        payload = dict(details or {})
        if conflicting_reading_id is not None:
            payload["conflictingReadingId"] = conflicting_reading_id
        super().__init__(code=code, http_status=409, message=message, details=payload or None)
        self.conflicting_reading_id = conflicting_reading_id


class InvalidStateError(DomainError):
    """Requested transition is not allowed from the reading's current state."""

    def __init__(self, *, current_status: str, attempted_status: str, message: str | None = None):
        super().__init__(
            code="READING_INVALID_STATE",
            http_status=409,
            message=message or f"Cannot move reading from {current_status} to {attempted_status}",
            details={"currentStatus": current_status, "attemptedStatus": attempted_status},
        )
        self.current_status = current_status
        self.attempted_status = attempted_status


class ForbiddenError(DomainError):
    def __init__(self, message: str, *, code: str = "FORBIDDEN", details: dict[str, Any] | None = None):
        super().__init__(code=code, http_status=403, message=message, details=details)


class NotFoundError(DomainError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND", details: dict[str, Any] | None = None):
        super().__init__(code=code, http_status=404, message=message, details=details)


class StorageError(DomainError):
    """Persistence collaborator failed; safe to retry with backoff."""

    retryable = True

    def __init__(self, message: str = "Storage backend unavailable", *, details: dict[str, Any] | None = None):
        super().__init__(code="STORAGE_UNAVAILABLE", http_status=503, message=message, details=details)
