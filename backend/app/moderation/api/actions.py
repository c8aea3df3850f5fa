"""Action ledger endpoints: record, inspect, list, reverse, reapply."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel

from app.moderation.api._errors import to_http_error
from app.moderation.api.deps import get_action_ledger_dep, get_staff_context
from app.moderation.domain.actions import ActionAmendment, ActionLedger, ModerationAction
from app.moderation.domain.exceptions import ModerationError
from app.moderation.domain.rbac import StaffContext

router = APIRouter(prefix="/api/mod/v1/actions", tags=["moderation-actions"])
users_router = APIRouter(prefix="/api/mod/v1/users", tags=["moderation-actions"])


class RecordActionIn(BaseModel):
    action_type: str
    reason: str
    target_user_id: str | None = None
    target_type: str | None = None
    target_id: str | None = None
    duration_days: int | None = None
    related_report_id: str | None = None
    internal_notes: str | None = None
    notification_message: str | None = None
    restriction_type: str | None = None


class ReverseIn(BaseModel):
    reason: str


class ReapplyIn(BaseModel):
    reason: str | None = None


class AmendActionIn(BaseModel):
    internal_notes: str | None = None
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    reversal_reason: str | None = None
    metadata: dict[str, Any] | None = None


class ActionOut(BaseModel):
    id: str
    moderator_id: str
    action_type: str
    reason: str
    target_user_id: str | None
    target_type: str | None
    target_id: str | None
    duration_days: int | None
    expires_at: datetime | None
    related_report_id: str | None
    internal_notes: str | None
    notification_sent: bool
    notification_message: str | None
    created_at: datetime
    revoked_at: datetime | None
    revoked_by: str | None
    metadata: dict[str, Any]

    @classmethod
    def from_domain(cls, action: ModerationAction) -> "ActionOut":
        return cls(
            id=action.id,
            moderator_id=action.moderator_id,
            action_type=action.kind.value,
            reason=action.reason,
            target_user_id=action.target_user_id,
            target_type=action.target_type.value if action.target_type else None,
            target_id=action.target_id,
            duration_days=action.duration_days,
            expires_at=action.expires_at,
            related_report_id=action.related_report_id,
            internal_notes=action.internal_notes,
            notification_sent=action.notification_sent,
            notification_message=action.notification_message,
            created_at=action.created_at,
            revoked_at=action.revoked_at,
            revoked_by=action.revoked_by,
            metadata=action.metadata.to_dict(),
        )


class ReversalOut(BaseModel):
    action: ActionOut
    lifted_restriction_ids: list[str]


@router.post("", response_model=ActionOut, status_code=status.HTTP_201_CREATED)
async def record_action(
    payload: RecordActionIn,
    ledger: ActionLedger = Depends(get_action_ledger_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> ActionOut:
    try:
        action = await ledger.record_action(
            staff,
            kind=payload.action_type,
            reason=payload.reason,
            target_user_id=payload.target_user_id,
            target_type=payload.target_type,
            target_id=payload.target_id,
            duration_days=payload.duration_days,
            related_report_id=payload.related_report_id,
            internal_notes=payload.internal_notes,
            notification_message=payload.notification_message,
            restriction_kind=payload.restriction_type,
        )
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return ActionOut.from_domain(action)


@router.get("", response_model=list[ActionOut])
async def list_actions(
    moderator_id: str | None = Query(default=None),
    target_user_id: str | None = Query(default=None),
    action_type: str | None = Query(default=None),
    is_reversed: bool | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    limit: int = Query(default=50),
    ledger: ActionLedger = Depends(get_action_ledger_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> list[ActionOut]:
    try:
        actions = await ledger.list_actions(
            staff,
            moderator_id=moderator_id,
            target_user_id=target_user_id,
            kind=action_type,
            is_reversed=is_reversed,
            created_from=created_from,
            created_to=created_to,
            limit=limit,
        )
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return [ActionOut.from_domain(item) for item in actions]


@users_router.get("/{user_id}/actions", response_model=list[ActionOut])
async def user_action_history(
    user_id: str,
    limit: int = Query(default=50),
    ledger: ActionLedger = Depends(get_action_ledger_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> list[ActionOut]:
    try:
        actions = await ledger.list_actions(staff, target_user_id=user_id, limit=limit)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return [ActionOut.from_domain(item) for item in actions]


@router.get("/{action_id}", response_model=ActionOut)
async def get_action(
    action_id: str,
    ledger: ActionLedger = Depends(get_action_ledger_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> ActionOut:
    try:
        action = await ledger.view_action(staff, action_id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return ActionOut.from_domain(action)


@router.post("/{action_id}/reverse", response_model=ReversalOut)
async def reverse_action(
    action_id: str,
    payload: ReverseIn,
    ledger: ActionLedger = Depends(get_action_ledger_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> ReversalOut:
    try:
        outcome = await ledger.reverse_action(staff, action_id, reason=payload.reason)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return ReversalOut(
        action=ActionOut.from_domain(outcome.action),
        lifted_restriction_ids=[item.id for item in outcome.lifted],
    )


@router.post("/{action_id}/reapply", response_model=ActionOut, status_code=status.HTTP_201_CREATED)
async def reapply_action(
    action_id: str,
    payload: ReapplyIn,
    ledger: ActionLedger = Depends(get_action_ledger_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> ActionOut:
    try:
        action = await ledger.reapply_action(staff, action_id, reason=payload.reason)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return ActionOut.from_domain(action)


@router.patch("/{action_id}", response_model=ActionOut)
async def amend_action(
    action_id: str,
    payload: AmendActionIn,
    ledger: ActionLedger = Depends(get_action_ledger_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> ActionOut:
    provided = payload.model_fields_set
    amendment = ActionAmendment()
    if "internal_notes" in provided:
        amendment.internal_notes = payload.internal_notes
    if "revoked_at" in provided:
        amendment.revoked_at = payload.revoked_at
    if "revoked_by" in provided:
        amendment.revoked_by = payload.revoked_by
    if "reversal_reason" in provided:
        amendment.reversal_reason = payload.reversal_reason
    if "metadata" in provided:
        amendment.extra_metadata = payload.metadata
    try:
        action = await ledger.amend_action(staff, action_id, amendment)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return ActionOut.from_domain(action)


@router.delete("/{action_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_action(
    action_id: str,
    ledger: ActionLedger = Depends(get_action_ledger_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> Response:
    try:
        await ledger.delete_action(staff, action_id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
