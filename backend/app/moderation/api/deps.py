"""FastAPI dependencies shared by the moderation routers."""

from __future__ import annotations

from fastapi import Depends

from app.infra.auth import AuthenticatedUser, get_current_user
from app.moderation.domain import container
from app.moderation.domain.actions import ActionLedger
from app.moderation.domain.expiration import ExpirationSweeper
from app.moderation.domain.rbac import StaffContext, resolve_staff_context
from app.moderation.domain.reports import ReportService
from app.moderation.domain.restrictions import RestrictionService
from app.moderation.domain.reversal_metrics import ReversalMetricsService


async def get_staff_context(user: AuthenticatedUser = Depends(get_current_user)) -> StaffContext:
    """Resolve the caller's capabilities; services decide whether they are enough."""
    return resolve_staff_context(user)


def get_report_service_dep() -> ReportService:
    return container.get_report_service()


def get_action_ledger_dep() -> ActionLedger:
    return container.get_action_ledger()


def get_restriction_service_dep() -> RestrictionService:
    return container.get_restriction_service()


def get_sweeper_dep() -> ExpirationSweeper:
    return container.get_expiration_sweeper()


def get_metrics_service_dep() -> ReversalMetricsService:
    return container.get_reversal_metrics_service()
