"""Report queue: intake, priority assignment, and review transitions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence
from uuid import uuid4

from app.infra import rate_limit
from app.moderation.domain.exceptions import (
    DuplicateReport,
    InvalidReason,
    InvalidTransition,
    NotFound,
    RateLimited,
    Unauthenticated,
)
from app.moderation.domain.notices import staff_report_alert
from app.moderation.domain.notifications import NotificationSink, notify_best_effort
from app.moderation.domain.rbac import StaffCapability, StaffContext, ensure_capability
from app.moderation.domain.security_events import (
    SecurityEventKind,
    SecurityEventSink,
    Severity,
    record_security_event,
)
from app.moderation.domain.validation import (
    MAX_DESCRIPTION_LENGTH,
    MAX_NOTES_LENGTH,
    Clock,
    check_range,
    clean_text,
    parse_enum,
    utcnow,
)
from app.obs import metrics as obs_metrics
from app.obs.logging import get_logger
from app.settings import settings

logger = get_logger("moderation.reports")

DUPLICATE_WINDOW = timedelta(hours=24)
MODERATOR_FLAG_PRIORITY = 1
MAX_ACTION_TAKEN_LENGTH = 1000


class ReportKind(str, Enum):
    POST = "post"
    COMMENT = "comment"
    TRACK = "track"
    USER = "user"
    ALBUM = "album"


class ReportReason(str, Enum):
    SPAM = "spam"
    HARASSMENT = "harassment"
    HATE_SPEECH = "hate_speech"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    COPYRIGHT_VIOLATION = "copyright_violation"
    IMPERSONATION = "impersonation"
    SELF_HARM = "self_harm"
    OTHER = "other"


class ReportStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


PRIORITY_BY_REASON = {
    ReportReason.SELF_HARM: 1,
    ReportReason.HATE_SPEECH: 2,
    ReportReason.HARASSMENT: 2,
    ReportReason.INAPPROPRIATE_CONTENT: 3,
    ReportReason.SPAM: 3,
    ReportReason.COPYRIGHT_VIOLATION: 3,
    ReportReason.IMPERSONATION: 3,
    ReportReason.OTHER: 4,
}

ALLOWED_TRANSITIONS: dict[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.PENDING: frozenset({ReportStatus.UNDER_REVIEW, ReportStatus.RESOLVED, ReportStatus.DISMISSED}),
    ReportStatus.UNDER_REVIEW: frozenset({ReportStatus.RESOLVED, ReportStatus.DISMISSED}),
    ReportStatus.RESOLVED: frozenset(),
    ReportStatus.DISMISSED: frozenset(),
}

TERMINAL_STATUSES = frozenset({ReportStatus.RESOLVED, ReportStatus.DISMISSED})


@dataclass(slots=True)
class Report:
    id: str
    reporter_id: str | None
    kind: ReportKind
    target_id: str
    reason: ReportReason
    status: ReportStatus
    priority: int
    created_at: datetime
    updated_at: datetime
    reported_user_id: str | None = None
    description: str | None = None
    moderator_flagged: bool = False
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    resolution_notes: str | None = None
    action_taken: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ReportRepository(Protocol):
    async def create(self, report: Report) -> Report:
        ...

    async def get(self, report_id: str) -> Report | None:
        ...

    async def find_recent_duplicate(
        self,
        reporter_id: str,
        kind: ReportKind,
        target_id: str,
        *,
        since: datetime,
    ) -> Report | None:
        ...

    async def transition(self, report: Report, *, expected_status: ReportStatus) -> Report:
        """Persist ``report`` only if the stored status still equals ``expected_status``."""
        ...

    async def update_notes(self, report_id: str, *, notes: str, now: datetime) -> Report:
        ...

    async def list_queue(
        self,
        *,
        statuses: Iterable[ReportStatus],
        max_priority: int | None,
        limit: int,
    ) -> Sequence[Report]:
        ...


class InMemoryReportRepository(ReportRepository):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._items: dict[str, Report] = {}

    async def create(self, report: Report) -> Report:
        async with self._lock:
            self._items[report.id] = replace(report)
            return replace(report)

    async def get(self, report_id: str) -> Report | None:
        item = self._items.get(report_id)
        return replace(item) if item else None

    async def find_recent_duplicate(
        self,
        reporter_id: str,
        kind: ReportKind,
        target_id: str,
        *,
        since: datetime,
    ) -> Report | None:
        for item in self._items.values():
            if (
                item.reporter_id == reporter_id
                and item.kind is kind
                and item.target_id == target_id
                and item.created_at >= since
            ):
                return replace(item)
        return None

    async def transition(self, report: Report, *, expected_status: ReportStatus) -> Report:
        async with self._lock:
            current = self._items.get(report.id)
            if current is None:
                raise NotFound("report_not_found")
            if current.status is not expected_status:
                raise InvalidTransition(current.status.value, report.status.value)
            self._items[report.id] = replace(report)
            return replace(report)

    async def update_notes(self, report_id: str, *, notes: str, now: datetime) -> Report:
        async with self._lock:
            current = self._items.get(report_id)
            if current is None:
                raise NotFound("report_not_found")
            current.resolution_notes = notes
            current.updated_at = now
            return replace(current)

    async def list_queue(
        self,
        *,
        statuses: Iterable[ReportStatus],
        max_priority: int | None,
        limit: int,
    ) -> Sequence[Report]:
        wanted = set(statuses)
        items = [
            replace(item)
            for item in self._items.values()
            if item.status in wanted and (max_priority is None or item.priority <= max_priority)
        ]
        items.sort(key=lambda item: (item.priority, item.created_at))
        return items[:limit]


def priority_for(reason: ReportReason) -> int:
    return PRIORITY_BY_REASON.get(reason, 3)


class ReportService:
    """Accepts user reports and moderator flags and walks them through review."""

    def __init__(
        self,
        repository: ReportRepository,
        *,
        notifications: NotificationSink | None = None,
        security_events: SecurityEventSink | None = None,
        rate_limiter=rate_limit.allow,
        clock: Clock = utcnow,
        staff_ids: Optional[Iterable[str]] = None,
    ) -> None:
        self._repo = repository
        self._notifications = notifications
        self._security_events = security_events
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._staff_ids = tuple(staff_ids) if staff_ids is not None else tuple(settings.moderation_staff_ids)

    async def get_report(self, report_id: str) -> Report:
        report = await self._repo.get(report_id)
        if report is None:
            raise NotFound("report_not_found")
        return report

    async def exists(self, report_id: str) -> bool:
        return await self._repo.get(report_id) is not None

    async def submit_report(
        self,
        reporter_id: str | None,
        *,
        kind: ReportKind | str,
        target_id: str,
        reason: ReportReason | str,
        description: str | None = None,
        reported_user_id: str | None = None,
    ) -> Report:
        if not reporter_id:
            raise Unauthenticated()
        report_reason = self._parse_reason(reason)
        report_kind = parse_enum(ReportKind, "report_type", kind)
        target = clean_text("target_id", target_id, max_length=255, required=True) or ""
        text = clean_text(
            "description",
            description,
            max_length=MAX_DESCRIPTION_LENGTH,
            required=report_reason is ReportReason.OTHER,
        )
        now = self._clock()
        duplicate = await self._repo.find_recent_duplicate(reporter_id, report_kind, target, since=now - DUPLICATE_WINDOW)
        if duplicate is not None:
            await record_security_event(
                self._security_events,
                SecurityEventKind.DUPLICATE_REPORT_ATTEMPT,
                Severity.LOW,
                reporter_id,
                {"report_type": report_kind.value, "target_id": target, "existing_report_id": duplicate.id},
            )
            raise DuplicateReport(context={"existing_report_id": duplicate.id})
        if self._rate_limiter is not None:
            limit = settings.moderation_report_rate_limit
            window = settings.moderation_report_rate_window_seconds
            if not await self._rate_limiter("moderation_report", reporter_id, limit=limit, window_seconds=window):
                raise RateLimited("report_rate_limited", context={"limit": limit, "window_seconds": window})

        report = Report(
            id=str(uuid4()),
            reporter_id=reporter_id,
            kind=report_kind,
            target_id=target,
            reason=report_reason,
            status=ReportStatus.PENDING,
            priority=priority_for(report_reason),
            created_at=now,
            updated_at=now,
            reported_user_id=(reported_user_id or "").strip() or None,
            description=text,
        )
        stored = await self._repo.create(report)
        obs_metrics.inc_report(report_reason.value, moderator_flagged=False)
        logger.info(
            "report_submitted",
            extra={
                "report_id": stored.id,
                "report_type": report_kind.value,
                "reason": report_reason.value,
                "priority": stored.priority,
            },
        )
        if stored.priority <= 2:
            await self._alert_staff(stored)
        return stored

    async def flag_content(
        self,
        actor: StaffContext,
        *,
        kind: ReportKind | str,
        target_id: str,
        reason: ReportReason | str,
        description: str | None = None,
        reported_user_id: str | None = None,
        priority: int | None = None,
    ) -> Report:
        """Privileged intake path: no reporter, highest tier unless a priority is given."""
        ensure_capability(actor, StaffCapability.FLAG_CONTENT)
        report_reason = self._parse_reason(reason)
        report_kind = parse_enum(ReportKind, "report_type", kind)
        target = clean_text("target_id", target_id, max_length=255, required=True) or ""
        text = clean_text("description", description, max_length=MAX_DESCRIPTION_LENGTH)
        check_range("priority", priority, low=1, high=5)
        now = self._clock()
        report = Report(
            id=str(uuid4()),
            reporter_id=None,
            kind=report_kind,
            target_id=target,
            reason=report_reason,
            status=ReportStatus.UNDER_REVIEW,
            priority=priority if priority is not None else MODERATOR_FLAG_PRIORITY,
            created_at=now,
            updated_at=now,
            reported_user_id=(reported_user_id or "").strip() or None,
            description=text,
            moderator_flagged=True,
            reviewed_by=actor.actor_id,
            reviewed_at=now,
        )
        stored = await self._repo.create(report)
        obs_metrics.inc_report(report_reason.value, moderator_flagged=True)
        logger.info(
            "content_flagged",
            extra={"report_id": stored.id, "actor_id": actor.actor_id, "priority": stored.priority},
        )
        return stored

    async def transition_report(
        self,
        actor: StaffContext,
        report_id: str,
        new_status: ReportStatus | str,
        *,
        notes: str | None = None,
        action_taken: str | None = None,
    ) -> Report:
        ensure_capability(actor, StaffCapability.REVIEW_REPORTS)
        target_status = parse_enum(ReportStatus, "status", new_status)
        cleaned_notes = clean_text("resolution_notes", notes, max_length=MAX_NOTES_LENGTH)
        taken = clean_text("action_taken", action_taken, max_length=MAX_ACTION_TAKEN_LENGTH)
        current = await self.get_report(report_id)
        if target_status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransition(current.status.value, target_status.value)

        now = self._clock()
        updated = replace(current, status=target_status, updated_at=now)
        if current.status is ReportStatus.PENDING:
            updated.reviewed_by = actor.actor_id
            updated.reviewed_at = now
        if cleaned_notes is not None:
            updated.resolution_notes = cleaned_notes
        if taken is not None:
            updated.action_taken = taken
        stored = await self._repo.transition(updated, expected_status=current.status)
        obs_metrics.inc_report_transition(current.status.value, target_status.value)
        logger.info(
            "report_transitioned",
            extra={
                "report_id": report_id,
                "actor_id": actor.actor_id,
                "from": current.status.value,
                "to": target_status.value,
            },
        )
        return stored

    async def annotate_report(self, actor: StaffContext, report_id: str, *, notes: str) -> Report:
        """Amend resolution notes; the only write a resolved or dismissed report accepts."""
        ensure_capability(actor, StaffCapability.REVIEW_REPORTS)
        cleaned = clean_text("resolution_notes", notes, max_length=MAX_NOTES_LENGTH, required=True) or ""
        await self.get_report(report_id)
        return await self._repo.update_notes(report_id, notes=cleaned, now=self._clock())

    async def list_queue(
        self,
        actor: StaffContext,
        *,
        statuses: Iterable[ReportStatus | str] | None = None,
        max_priority: int | None = None,
        limit: int = 50,
    ) -> Sequence[Report]:
        ensure_capability(actor, StaffCapability.REVIEW_REPORTS)
        wanted = (
            [parse_enum(ReportStatus, "status", item) for item in statuses]
            if statuses
            else [ReportStatus.PENDING, ReportStatus.UNDER_REVIEW]
        )
        check_range("max_priority", max_priority, low=1, high=5)
        check_range("limit", limit, low=1, high=200)
        return await self._repo.list_queue(statuses=wanted, max_priority=max_priority, limit=limit)

    def _parse_reason(self, reason: ReportReason | str) -> ReportReason:
        if isinstance(reason, ReportReason):
            return reason
        try:
            return ReportReason(str(reason))
        except ValueError:
            raise InvalidReason(str(reason)) from None

    async def _alert_staff(self, report: Report) -> None:
        title, message = staff_report_alert(report.priority, report.kind.value, report.reason.value)
        metadata = {
            "report_id": report.id,
            "priority": report.priority,
            "reason": report.reason.value,
            "report_type": report.kind.value,
        }
        for staff_id in self._staff_ids:
            if staff_id == report.reporter_id:
                continue
            await notify_best_effort(self._notifications, staff_id, title, message, metadata)

