"""User-facing notification texts for moderation events."""

from __future__ import annotations

from datetime import datetime
from typing import Any

_ACTION_TITLES = {
    "content_removed": "Content Removed",
    "content_approved": "Content Approved",
    "user_warned": "Warning Issued",
    "user_suspended": "Account Suspended",
    "user_banned": "Account Suspended Permanently",
    "restriction_applied": "Account Restriction Applied",
}

_REVERSAL_TEXT = {
    "user_suspended": ("Suspension Lifted", "Your account suspension has been lifted"),
    "user_banned": ("Ban Removed", "Your permanent ban has been removed"),
    "restriction_applied": ("Restriction Removed", "A restriction on your account has been removed"),
    "user_warned": ("Warning Revoked", "A warning on your account has been revoked"),
    "content_removed": (
        "Content Removal Revoked",
        "A content removal action has been revoked (note: content cannot be restored)",
    ),
}
_DEFAULT_REVERSAL = ("Moderation Action Revoked", "A moderation action on your account has been revoked")

_RESTRICTION_LABELS = {
    "posting_disabled": "posting",
    "commenting_disabled": "commenting",
    "upload_disabled": "upload",
}


def action_notice(
    kind: str,
    *,
    reason: str,
    custom_message: str | None,
    expires_at: datetime | None,
    restriction_type: str | None,
) -> tuple[str, str]:
    title = _ACTION_TITLES.get(kind, "Moderation Action")
    lines = [custom_message] if custom_message else [_action_summary(kind, expires_at, restriction_type)]
    lines.append(f"Reason: {reason}")
    return title, "\n\n".join(lines)


def _action_summary(kind: str, expires_at: datetime | None, restriction_type: str | None) -> str:
    until = f" until {expires_at.strftime('%Y-%m-%d %H:%M UTC')}" if expires_at else ""
    if kind == "user_suspended":
        return f"Your account has been suspended{until}." if until else "Your account has been suspended."
    if kind == "user_banned":
        return "Your account has been permanently suspended."
    if kind == "restriction_applied":
        label = _RESTRICTION_LABELS.get(restriction_type or "", "account")
        return f"Your {label} privileges have been restricted{until}."
    if kind == "user_warned":
        return "You have received a warning from the moderation team."
    if kind == "content_removed":
        return "Some of your content has been removed by a moderator."
    return "A moderation action has been taken on your account."


def reversal_notice(kind: str, *, reason: str, original_reason: str) -> tuple[str, str]:
    title, prefix = _REVERSAL_TEXT.get(kind, _DEFAULT_REVERSAL)
    message = (
        f"{prefix}.\n\nReason: {reason}\n\nOriginal action reason: {original_reason}\n\n"
        "Please continue to follow our community guidelines to maintain your account in good standing."
    )
    return title, message


def expiration_notice(restriction_type: str) -> tuple[str, str, dict[str, Any]]:
    metadata = {"moderation_action": "restriction_expired", "restriction_type": restriction_type}
    if restriction_type == "suspended":
        return (
            "Account Suspension Expired",
            "Your account suspension has expired. You can now post, comment, and upload again.",
            metadata,
        )
    label = _RESTRICTION_LABELS.get(restriction_type, "account")
    return (
        "Account Restriction Lifted",
        f"Your {label} restriction has expired and has been lifted.",
        metadata,
    )


def staff_report_alert(priority: int, report_type: str, reason: str) -> tuple[str, str]:
    label = "P1 Critical" if priority == 1 else "P2 High Priority"
    title = f"{label} Report: {report_type.replace('_', ' ').title()} - {reason.replace('_', ' ').title()}"
    return title, "Requires immediate attention" if priority == 1 else "Review needed"
