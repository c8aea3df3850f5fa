from __future__ import annotations

from typing import Any, Mapping, Optional

from app.obs.logging import current_request_id, get_logger

audit_logger = get_logger("audit.security")


def log_security_event(
    kind: str,
    severity: str,
    user_id: Optional[str],
    details: Mapping[str, Any],
) -> None:
    """Mirror a security event into the structured audit log stream."""
    payload: dict[str, Any] = {
        "event": kind,
        "severity": severity,
        "actor_id": user_id,
        "request_id": current_request_id(),
        "details": dict(details),
    }
    filtered = {key: value for key, value in payload.items() if value is not None}
    level = "warning" if severity in ("high", "critical") else "info"
    getattr(audit_logger, level)("security_event", extra=filtered)
