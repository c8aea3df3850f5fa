"""Restriction endpoints and per-user capability lookups."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from app.infra.auth import AuthenticatedUser, get_current_user
from app.moderation.api._errors import to_http_error
from app.moderation.api.deps import get_restriction_service_dep, get_staff_context
from app.moderation.domain.exceptions import Forbidden, ModerationError
from app.moderation.domain.rbac import StaffContext, resolve_staff_context
from app.moderation.domain.restrictions import Restriction, RestrictionService

router = APIRouter(prefix="/api/mod/v1/restrictions", tags=["moderation-restrictions"])
users_router = APIRouter(prefix="/api/mod/v1/users", tags=["moderation-restrictions"])


class RestrictionOut(BaseModel):
    id: str
    user_id: str
    restriction_type: str
    reason: str
    applied_by: str
    is_active: bool
    is_permanent: bool
    expires_at: datetime | None
    related_action_id: str | None
    created_at: datetime
    updated_at: datetime | None

    @classmethod
    def from_domain(cls, restriction: Restriction) -> "RestrictionOut":
        return cls(
            id=restriction.id,
            user_id=restriction.user_id,
            restriction_type=restriction.kind.value,
            reason=restriction.reason,
            applied_by=restriction.applied_by,
            is_active=restriction.is_active,
            is_permanent=restriction.is_permanent,
            expires_at=restriction.expires_at,
            related_action_id=restriction.related_action_id,
            created_at=restriction.created_at,
            updated_at=restriction.updated_at,
        )


class ApplyRestrictionIn(BaseModel):
    user_id: str
    restriction_type: str
    reason: str
    duration_days: int | None = None
    related_action_id: str | None = None


class LiftRestrictionIn(BaseModel):
    reason: str


class CapabilityOut(BaseModel):
    user_id: str
    capability: str
    allowed: bool
    message: str
    blocked_by: str | None = None
    until: datetime | None = None
    reason: str | None = None


class SuspensionOut(BaseModel):
    user_id: str
    is_suspended: bool
    suspended_until: datetime | None
    suspension_reason: str | None
    is_permanent: bool
    days_remaining: int | None


def _ensure_self_or_staff(user: AuthenticatedUser, user_id: str) -> None:
    if user.id != user_id and not resolve_staff_context(user).is_moderator:
        raise Forbidden("moderator_required")


@router.post("", response_model=RestrictionOut, status_code=status.HTTP_201_CREATED)
async def apply_restriction(
    payload: ApplyRestrictionIn,
    service: RestrictionService = Depends(get_restriction_service_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> RestrictionOut:
    try:
        restriction = await service.apply_restriction(
            staff,
            user_id=payload.user_id,
            kind=payload.restriction_type,
            reason=payload.reason,
            duration_days=payload.duration_days,
            related_action_id=payload.related_action_id,
        )
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return RestrictionOut.from_domain(restriction)


@router.post("/{restriction_id}/lift", response_model=RestrictionOut)
async def lift_restriction(
    restriction_id: str,
    payload: LiftRestrictionIn,
    service: RestrictionService = Depends(get_restriction_service_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> RestrictionOut:
    try:
        restriction = await service.lift_restriction(staff, restriction_id, reason=payload.reason)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return RestrictionOut.from_domain(restriction)


@users_router.get("/{user_id}/restrictions", response_model=list[RestrictionOut])
async def list_active_restrictions(
    user_id: str,
    include_inactive: bool = Query(default=False),
    service: RestrictionService = Depends(get_restriction_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[RestrictionOut]:
    try:
        _ensure_self_or_staff(user, user_id)
        if include_inactive:
            items = await service.list_history(user_id)
        else:
            items = await service.list_active_restrictions(user_id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return [RestrictionOut.from_domain(item) for item in items]


@users_router.get("/{user_id}/can/{capability}", response_model=CapabilityOut)
async def can_perform(
    user_id: str,
    capability: str,
    service: RestrictionService = Depends(get_restriction_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> CapabilityOut:
    try:
        _ensure_self_or_staff(user, user_id)
        decision = await service.check_capability(user_id, capability)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return CapabilityOut(
        user_id=user_id,
        capability=decision.capability.value,
        allowed=decision.allowed,
        blocked_by=decision.blocked_by.value if decision.blocked_by else None,
        until=decision.until,
        reason=decision.reason,
        message=decision.describe(),
    )


@users_router.get("/{user_id}/suspension", response_model=SuspensionOut)
async def suspension_status(
    user_id: str,
    service: RestrictionService = Depends(get_restriction_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> SuspensionOut:
    try:
        _ensure_self_or_staff(user, user_id)
        state = await service.get_suspension_status(user_id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return SuspensionOut(
        user_id=state.user_id,
        is_suspended=state.is_suspended,
        suspended_until=state.suspended_until,
        suspension_reason=state.suspension_reason,
        is_permanent=state.is_permanent,
        days_remaining=state.days_remaining,
    )
