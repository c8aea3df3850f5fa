"""Domain errors raised by the moderation engine.

Each error carries the HTTP status the API layer should answer with, a stable
machine-readable ``detail`` code, and an optional ``context`` mapping naming the
offending field or the conflicting state so callers can act on it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from fastapi import status

if hasattr(status, "HTTP_422_UNPROCESSABLE_CONTENT"):
    _HTTP_422 = status.HTTP_422_UNPROCESSABLE_CONTENT
else:  # pragma: no cover - older Starlette builds
    _HTTP_422 = status.HTTP_422_UNPROCESSABLE_ENTITY


class ModerationError(Exception):
    """Base class for moderation engine failures."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: str = "moderation_error"

    def __init__(self, detail: str | None = None, *, context: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail
        self.context: dict[str, Any] = dict(context or {})

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.detail}
        if self.context:
            payload["context"] = {
                key: value.isoformat() if isinstance(value, datetime) else value
                for key, value in self.context.items()
            }
        return payload


class ValidationFailed(ModerationError):
    """Bad enum value, out-of-range number, or a missing required field."""

    status_code = _HTTP_422
    detail = "validation_error"

    def __init__(self, field: str, constraint: str, *, detail: str | None = None) -> None:
        super().__init__(detail, context={"field": field, "constraint": constraint})
        self.field = field
        self.constraint = constraint


class InvalidReason(ValidationFailed):
    detail = "invalid_reason"

    def __init__(self, reason: str) -> None:
        super().__init__("reason", f"unknown reason {reason!r}")


class Unauthenticated(ModerationError):
    status_code = status.HTTP_401_UNAUTHORIZED
    detail = "unauthenticated"


class Forbidden(ModerationError):
    status_code = status.HTTP_403_FORBIDDEN
    detail = "forbidden"


class NotFound(ModerationError):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "not_found"


class ConflictError(ModerationError):
    """The caller's assumption about current state was wrong; re-read and retry."""

    status_code = status.HTTP_409_CONFLICT
    detail = "conflict"


class AlreadyRestricted(ConflictError):
    detail = "already_restricted"

    def __init__(
        self,
        user_id: str,
        kind: str,
        *,
        existing_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        super().__init__(
            context={
                "user_id": user_id,
                "restriction_type": kind,
                "existing_restriction_id": existing_id,
                "expires_at": expires_at,
            }
        )


class AlreadyReversed(ConflictError):
    detail = "already_reversed"

    def __init__(self, action_id: str, *, revoked_by: str | None, revoked_at: datetime | None) -> None:
        super().__init__(context={"action_id": action_id, "revoked_by": revoked_by, "revoked_at": revoked_at})
        self.revoked_by = revoked_by
        self.revoked_at = revoked_at

    def __str__(self) -> str:
        when = self.revoked_at.isoformat() if self.revoked_at else "unknown time"
        return f"action already reversed by {self.revoked_by} at {when}"


class InvalidTransition(ConflictError):
    detail = "invalid_transition"

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(context={"from": from_status, "to": to_status})


class DuplicateReport(ConflictError):
    detail = "duplicate_report"


class RestrictionInactive(ConflictError):
    detail = "restriction_inactive"


class NotReversed(ConflictError):
    detail = "action_not_reversed"


class RateLimited(ModerationError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    detail = "rate_limited"


class ImmutabilityViolation(ModerationError):
    """A write against a reversed ledger entry.

    ``context`` holds the attempted change for the security-event sink; the API
    layer never echoes it back to the caller.
    """

    status_code = status.HTTP_409_CONFLICT
    detail = "immutable_record"

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.detail}


class TransientStoreError(ModerationError):
    """Timeout or lost connection; safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    detail = "store_unavailable"

    def __init__(self, detail: str | None = None, *, sqlstate: str | None = None) -> None:
        super().__init__(detail, context={"sqlstate": sqlstate} if sqlstate else None)
        self.sqlstate = sqlstate
