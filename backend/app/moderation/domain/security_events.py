"""Security-event sink for tamper attempts and other sensitive moderation events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Protocol

from app.obs.audit import log_security_event
from app.obs.logging import get_logger

logger = get_logger("moderation.security")


class SecurityEventKind(str, Enum):
    REVERSAL_MODIFICATION_ATTEMPT = "reversal_modification_attempt"
    SELF_REVERSAL = "self_reversal"
    DUPLICATE_REPORT_ATTEMPT = "duplicate_report_attempt"
    UNAUTHORIZED_ACTION_ATTEMPT = "unauthorized_action_attempt"
    UNAUTHORIZED_ACTION_ON_ADMIN = "unauthorized_action_on_admin"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(slots=True)
class SecurityEvent:
    kind: str
    severity: str
    user_id: str | None
    details: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SecurityEventSink(Protocol):
    async def log_security_event(
        self,
        kind: str,
        severity: str,
        user_id: str | None,
        details: Mapping[str, Any],
    ) -> None:
        ...


class InMemorySecurityEventSink(SecurityEventSink):
    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []

    async def log_security_event(
        self,
        kind: str,
        severity: str,
        user_id: str | None,
        details: Mapping[str, Any],
    ) -> None:
        self.events.append(SecurityEvent(kind=kind, severity=severity, user_id=user_id, details=dict(details)))

    def of_kind(self, kind: SecurityEventKind | str) -> list[SecurityEvent]:
        value = kind.value if isinstance(kind, SecurityEventKind) else kind
        return [event for event in self.events if event.kind == value]


async def record_security_event(
    sink: SecurityEventSink | None,
    kind: SecurityEventKind,
    severity: Severity,
    user_id: str | None,
    details: Mapping[str, Any],
) -> None:
    """Write to the audit log and the sink; sink failures are logged and swallowed."""
    log_security_event(kind.value, severity.value, user_id, details)
    if sink is None:
        return
    try:
        await sink.log_security_event(kind.value, severity.value, user_id, details)
    except Exception:  # noqa: BLE001 - the rejection that triggered this must still happen
        logger.error("security_event_sink_failed", extra={"event": kind.value, "actor_id": user_id}, exc_info=True)
