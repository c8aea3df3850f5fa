"""Admin endpoints: manual expiration sweeps and reversal metrics."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.moderation.api._errors import to_http_error
from app.moderation.api.deps import get_metrics_service_dep, get_staff_context, get_sweeper_dep
from app.moderation.domain.exceptions import ModerationError
from app.moderation.domain.expiration import ExpirationSweeper, SweepRun
from app.moderation.domain.rbac import StaffCapability, StaffContext, ensure_capability
from app.moderation.domain.reversal_metrics import ReversalMetricsService

router = APIRouter(prefix="/api/mod/v1/admin", tags=["moderation-admin"])


class SweepRunOut(BaseModel):
    id: str
    job_type: str
    expired_count: int
    failed_count: int
    duration_ms: int
    status: str
    error_message: str | None
    started_at: datetime

    @classmethod
    def from_domain(cls, run: SweepRun) -> "SweepRunOut":
        return cls(
            id=run.id,
            job_type=run.job_type,
            expired_count=run.expired_count,
            failed_count=run.failed_count,
            duration_ms=run.duration_ms,
            status=run.status,
            error_message=run.error_message,
            started_at=run.started_at,
        )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@router.post("/sweep-expirations", response_model=list[SweepRunOut])
async def sweep_expirations(
    sweeper: ExpirationSweeper = Depends(get_sweeper_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> list[SweepRunOut]:
    try:
        ensure_capability(staff, StaffCapability.RUN_SWEEP)
        runs = await sweeper.run()
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return [SweepRunOut.from_domain(run) for run in runs]


@router.get("/sweep-runs", response_model=list[SweepRunOut])
async def sweep_runs(
    limit: int = Query(default=20, ge=1, le=200),
    sweeper: ExpirationSweeper = Depends(get_sweeper_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> list[SweepRunOut]:
    try:
        ensure_capability(staff, StaffCapability.VIEW_AUDIT)
        runs = await sweeper.list_runs(limit=limit)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return [SweepRunOut.from_domain(run) for run in runs]


@router.get("/reversal-metrics")
async def reversal_metrics(
    start: datetime = Query(...),
    end: datetime = Query(...),
    service: ReversalMetricsService = Depends(get_metrics_service_dep),
    staff: StaffContext = Depends(get_staff_context),
) -> dict[str, Any]:
    try:
        metrics = await service.get_reversal_metrics(staff, start=_aware(start), end=_aware(end))
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return metrics.to_dict()
