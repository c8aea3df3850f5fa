"""Lightweight service container shared by moderation modules."""

from __future__ import annotations

from typing import Iterable, Optional

import asyncpg

from app.moderation.domain.actions import ActionLedger, ActionRepository, InMemoryActionRepository
from app.moderation.domain.expiration import ExpirationSweeper, InMemorySweepLogRepository, SweepLogRepository
from app.moderation.domain.notifications import InMemoryNotificationSink, NotificationSink
from app.moderation.domain.rbac import InMemoryRoleDirectory, RoleDirectory
from app.moderation.domain.reports import InMemoryReportRepository, ReportRepository, ReportService
from app.moderation.domain.restrictions import (
    InMemoryRestrictionRepository,
    RestrictionRepository,
    RestrictionService,
)
from app.moderation.domain.reversal_guard import ReversalGuard
from app.moderation.domain.reversal_metrics import ReversalMetricsService
from app.moderation.domain.security_events import InMemorySecurityEventSink, SecurityEventSink
from app.moderation.domain.validation import Clock, utcnow
from app.moderation.infra.action_repo import PostgresActionRepository
from app.moderation.infra.report_repo import PostgresReportRepository
from app.moderation.infra.restriction_repo import PostgresRestrictionRepository
from app.moderation.infra.sinks import (
    PostgresNotificationSink,
    PostgresRoleDirectory,
    PostgresSecurityEventSink,
    PostgresSweepLogRepository,
)
from app.settings import settings

_clock: Clock = utcnow
_roles: RoleDirectory
_notifications: NotificationSink
_security_events: SecurityEventSink
_staff_ids: tuple[str, ...] = tuple(settings.moderation_staff_ids)
_restriction_repository: RestrictionRepository
_action_repository: ActionRepository
_report_repository: ReportRepository
_sweep_log_repository: SweepLogRepository
_report_service: ReportService
_ledger: ActionLedger
_restriction_service: RestrictionService
_sweeper: ExpirationSweeper
_metrics_service: ReversalMetricsService


def _build_services(rate_limiter_enabled: bool = True) -> None:
    global _report_service, _ledger, _restriction_service, _sweeper, _metrics_service
    limiter_kwargs = {} if rate_limiter_enabled else {"rate_limiter": None}
    _report_service = ReportService(
        _report_repository,
        notifications=_notifications,
        security_events=_security_events,
        clock=_clock,
        staff_ids=_staff_ids,
        **limiter_kwargs,
    )
    _ledger = ActionLedger(
        _action_repository,
        roles=_roles,
        notifications=_notifications,
        security_events=_security_events,
        report_exists=_report_service.exists,
        clock=_clock,
        **limiter_kwargs,
    )
    _restriction_service = RestrictionService(
        _restriction_repository,
        ledger=_ledger,
        roles=_roles,
        clock=_clock,
    )
    _sweeper = ExpirationSweeper(
        _restriction_repository,
        _sweep_log_repository,
        notifications=_notifications,
        clock=_clock,
    )
    _metrics_service = ReversalMetricsService(_action_repository)


def configure(
    *,
    restriction_repository: Optional[RestrictionRepository] = None,
    action_repository: Optional[ActionRepository] = None,
    report_repository: Optional[ReportRepository] = None,
    sweep_log_repository: Optional[SweepLogRepository] = None,
    roles: Optional[RoleDirectory] = None,
    notifications: Optional[NotificationSink] = None,
    security_events: Optional[SecurityEventSink] = None,
    staff_recipient_ids: Optional[Iterable[str]] = None,
    clock: Optional[Clock] = None,
    rate_limits: bool = True,
) -> None:
    """Swap collaborators and rebuild the services.

    Called with no repositories it resets to fresh in-memory stores, which is
    what the test-suite relies on between cases.
    """
    global _restriction_repository, _action_repository, _report_repository, _sweep_log_repository
    global _roles, _notifications, _security_events, _staff_ids, _clock
    _roles = roles or InMemoryRoleDirectory()
    _notifications = notifications or InMemoryNotificationSink()
    _security_events = security_events or InMemorySecurityEventSink()
    if staff_recipient_ids is not None:
        _staff_ids = tuple(staff_recipient_ids)
    _clock = clock or utcnow
    _restriction_repository = restriction_repository or InMemoryRestrictionRepository()
    if action_repository is not None:
        _action_repository = action_repository
    elif isinstance(_restriction_repository, InMemoryRestrictionRepository):
        _action_repository = InMemoryActionRepository(
            _restriction_repository,
            guard=ReversalGuard(_security_events),
        )
    else:
        raise ValueError("a custom restriction repository needs a matching action repository")
    _report_repository = report_repository or InMemoryReportRepository()
    _sweep_log_repository = sweep_log_repository or InMemorySweepLogRepository()
    _build_services(rate_limiter_enabled=rate_limits)


def configure_postgres(pool: asyncpg.Pool) -> None:
    security_events = PostgresSecurityEventSink(pool)
    configure(
        restriction_repository=PostgresRestrictionRepository(pool),
        action_repository=PostgresActionRepository(pool, guard=ReversalGuard(security_events)),
        report_repository=PostgresReportRepository(pool),
        sweep_log_repository=PostgresSweepLogRepository(pool),
        roles=PostgresRoleDirectory(pool),
        notifications=PostgresNotificationSink(pool),
        security_events=security_events,
    )


configure()


def get_report_service() -> ReportService:
    return _report_service


def get_action_ledger() -> ActionLedger:
    return _ledger


def get_restriction_service() -> RestrictionService:
    return _restriction_service


def get_expiration_sweeper() -> ExpirationSweeper:
    return _sweeper


def get_reversal_metrics_service() -> ReversalMetricsService:
    return _metrics_service


def get_role_directory() -> RoleDirectory:
    return _roles


def get_notification_sink() -> NotificationSink:
    return _notifications


def get_security_event_sink() -> SecurityEventSink:
    return _security_events
