"""Report queue endpoints: user intake, moderator flags, and review."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from app.infra.auth import AuthenticatedUser, get_optional_user
from app.moderation.api._errors import to_http_error
from app.moderation.api.deps import get_report_service_dep, get_staff_context
from app.moderation.domain.exceptions import ModerationError, ValidationFailed
from app.moderation.domain.rbac import StaffContext
from app.moderation.domain.reports import Report, ReportService

router = APIRouter(prefix="/api/mod/v1/reports", tags=["moderation-reports"])


class ReportIn(BaseModel):
    report_type: str
    target_id: str = Field(..., min_length=1, max_length=255)
    reason: str
    description: str | None = None
    reported_user_id: str | None = None


class FlagIn(ReportIn):
    priority: int | None = None


class ReportPatchIn(BaseModel):
    status: str | None = None
    resolution_notes: str | None = None
    action_taken: str | None = None


class ReportOut(BaseModel):
    id: str
    reporter_id: str | None
    reported_user_id: str | None
    report_type: str
    target_id: str
    reason: str
    description: str | None
    status: str
    priority: int
    moderator_flagged: bool
    reviewed_by: str | None
    reviewed_at: datetime | None
    resolution_notes: str | None
    action_taken: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, report: Report) -> "ReportOut":
        return cls(
            id=report.id,
            reporter_id=report.reporter_id,
            reported_user_id=report.reported_user_id,
            report_type=report.kind.value,
            target_id=report.target_id,
            reason=report.reason.value,
            description=report.description,
            status=report.status.value,
            priority=report.priority,
            moderator_flagged=report.moderator_flagged,
            reviewed_by=report.reviewed_by,
            reviewed_at=report.reviewed_at,
            resolution_notes=report.resolution_notes,
            action_taken=report.action_taken,
            created_at=report.created_at,
            updated_at=report.updated_at,
        )


@router.post("", response_model=ReportOut, status_code=status.HTTP_201_CREATED)
async def submit_report(
    payload: ReportIn,
    service: ReportService = Depends(get_report_service_dep),
    reporter: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> ReportOut:
    try:
        report = await service.submit_report(
            reporter.id if reporter else None,
            kind=payload.report_type,
            target_id=payload.target_id,
            reason=payload.reason,
            description=payload.description,
            reported_user_id=payload.reported_user_id,
        )
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return ReportOut.from_domain(report)


@router.post("/flag", response_model=ReportOut, status_code=status.HTTP_201_CREATED)
async def flag_content(
    payload: FlagIn,
    service: ReportService = Depends(get_report_service_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> ReportOut:
    try:
        report = await service.flag_content(
            staff,
            kind=payload.report_type,
            target_id=payload.target_id,
            reason=payload.reason,
            description=payload.description,
            reported_user_id=payload.reported_user_id,
            priority=payload.priority,
        )
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return ReportOut.from_domain(report)


@router.get("", response_model=list[ReportOut])
async def list_queue(
    status_filter: list[str] | None = Query(default=None, alias="status"),
    max_priority: int | None = Query(default=None),
    limit: int = Query(default=50),
    service: ReportService = Depends(get_report_service_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> list[ReportOut]:
    try:
        reports = await service.list_queue(staff, statuses=status_filter, max_priority=max_priority, limit=limit)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return [ReportOut.from_domain(item) for item in reports]


@router.patch("/{report_id}", response_model=ReportOut)
async def update_report(
    report_id: str,
    payload: ReportPatchIn,
    service: ReportService = Depends(get_report_service_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> ReportOut:
    try:
        if payload.status is not None:
            report = await service.transition_report(
                staff,
                report_id,
                payload.status,
                notes=payload.resolution_notes,
                action_taken=payload.action_taken,
            )
        elif payload.resolution_notes is not None:
            report = await service.annotate_report(staff, report_id, notes=payload.resolution_notes)
        else:
            raise ValidationFailed("status", "status or resolution_notes required")
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return ReportOut.from_domain(report)
