"""Domain error taxonomy.

Services raise these; the API layer renders them with a stable ``code`` in the
same ``{"error": {...}}`` envelope used for HTTP and validation errors.

Retry posture
- NameConflict / SlotConflict / CapacityExhausted go back to the human caller.
  They are never retried with the same value.
- CredentialMismatch / UnknownEntity / MalformedIdentifier are device-facing.
  The device agent's own backoff loop is the only retry mechanism.
"""

from __future__ import annotations

from typing import Any


class FleetError(Exception):
    code: str = "FLEET_ERROR"
    http_status: int = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        err: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            err["details"] = dict(self.details)
        return err


class NameConflict(FleetError):
    code = "NAME_CONFLICT"
    http_status = 409


class SlotConflict(FleetError):
    code = "SLOT_CONFLICT"
    http_status = 409


class SlotOutOfRange(FleetError):
    code = "SLOT_OUT_OF_RANGE"
    http_status = 422


class CapacityExhausted(FleetError):
    """The project id space is used up. Needs operator intervention."""

    code = "CAPACITY_EXHAUSTED"
    http_status = 503


class CredentialMismatch(FleetError):
    code = "CREDENTIAL_MISMATCH"
    http_status = 401


class CredentialAlreadyIssued(FleetError):
    code = "CREDENTIAL_ALREADY_ISSUED"
    http_status = 409


class UnknownEntity(FleetError):
    code = "UNKNOWN_ENTITY"
    http_status = 404


class MalformedIdentifier(FleetError):
    code = "MALFORMED_IDENTIFIER"
    http_status = 400


class ProjectArchived(FleetError):
    code = "PROJECT_ARCHIVED"
    http_status = 409


class RateLimited(FleetError):
    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, message: str, *, retry_after_s: int) -> None:
        super().__init__(message, retry_after_s=retry_after_s)
        self.retry_after_s = retry_after_s
