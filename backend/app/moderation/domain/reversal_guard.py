"""Write guard for ledger entries that have been reversed.

Every repository write path calls the guard before touching storage:

- ``revoked_at`` / ``revoked_by`` never change once set, and never get cleared;
- ``metadata.reversal_reason`` is never removed once present;
- reversed entries are never deleted;
- ``revoked_at`` and ``revoked_by`` are always set together.

Violations are reported to the security-event sink before the rejection is
raised; a sink failure does not stop the rejection.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from app.moderation.domain.exceptions import ImmutabilityViolation, ValidationFailed
from app.moderation.domain.security_events import (
    SecurityEventKind,
    SecurityEventSink,
    Severity,
    record_security_event,
)
from app.obs import metrics as obs_metrics

if TYPE_CHECKING:  # pragma: no cover - type-only imports
    from app.moderation.domain.actions import ModerationAction


def _iso(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


def update_violations(before: "ModerationAction", after: "ModerationAction") -> list[dict[str, Any]]:
    """Return the immutable fields an update would change, with old/new values."""
    violations: list[dict[str, Any]] = []
    if before.revoked_at is not None and after.revoked_at != before.revoked_at:
        violations.append({"field": "revoked_at", "old": _iso(before.revoked_at), "new": _iso(after.revoked_at)})
    if before.revoked_by is not None and after.revoked_by != before.revoked_by:
        violations.append({"field": "revoked_by", "old": before.revoked_by, "new": after.revoked_by})
    if before.metadata.reversal_reason is not None and after.metadata.reversal_reason is None:
        violations.append(
            {"field": "metadata.reversal_reason", "old": before.metadata.reversal_reason, "new": None}
        )
    return violations


def check_paired_fields(action: "ModerationAction") -> None:
    if (action.revoked_at is None) != (action.revoked_by is None):
        raise ValidationFailed("revoked_by", "must be set together with revoked_at")


class ReversalGuard:
    def __init__(self, security_sink: SecurityEventSink | None = None) -> None:
        self.security_sink = security_sink

    async def check_update(
        self,
        before: "ModerationAction",
        after: "ModerationAction",
        *,
        actor_id: str | None,
    ) -> None:
        check_paired_fields(after)
        violations = update_violations(before, after)
        if not violations:
            return
        await self._reject("update", before, actor_id, {"attempted_changes": violations})

    async def check_delete(self, action: "ModerationAction", *, actor_id: str | None) -> None:
        if action.revoked_at is None:
            return
        await self._reject(
            "delete",
            action,
            actor_id,
            {"revoked_at": _iso(action.revoked_at), "revoked_by": action.revoked_by},
        )

    async def _reject(
        self,
        operation: str,
        action: "ModerationAction",
        actor_id: str | None,
        details: dict[str, Any],
    ) -> None:
        obs_metrics.inc_immutability_violation(operation)
        payload = {"operation": operation, "action_id": action.id, "action_type": action.kind.value, **details}
        await record_security_event(
            self.security_sink,
            SecurityEventKind.REVERSAL_MODIFICATION_ATTEMPT,
            Severity.HIGH,
            actor_id,
            payload,
        )
        raise ImmutabilityViolation(context=payload)
