"""Expiration sweeper: deactivates restrictions whose expiry has passed."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence
from uuid import uuid4

from app.moderation.domain.notices import expiration_notice
from app.moderation.domain.notifications import NotificationSink, notify_best_effort
from app.moderation.domain.restrictions import Restriction, RestrictionKind, RestrictionRepository
from app.moderation.domain.validation import Clock, utcnow
from app.obs import metrics as obs_metrics
from app.obs.logging import get_logger
from app.settings import settings

logger = get_logger("jobs.sweeper")

SWEEP_JOBS: tuple[tuple[str, tuple[RestrictionKind, ...]], ...] = (
    (
        "restriction_expiration",
        (RestrictionKind.POSTING_DISABLED, RestrictionKind.COMMENTING_DISABLED, RestrictionKind.UPLOAD_DISABLED),
    ),
    ("suspension_expiration", (RestrictionKind.SUSPENDED,)),
)


class SweepStatus:
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(slots=True)
class SweepRun:
    job_type: str
    started_at: datetime
    id: str = field(default_factory=lambda: str(uuid4()))
    expired_count: int = 0
    failed_count: int = 0
    duration_ms: int = 0
    status: str = SweepStatus.SUCCESS
    error_message: str | None = None
    expired_ids: list[str] = field(default_factory=list)


class SweepLogRepository(Protocol):
    async def record(self, run: SweepRun) -> None:
        ...

    async def list_recent(self, *, limit: int) -> Sequence[SweepRun]:
        ...


class InMemorySweepLogRepository(SweepLogRepository):
    def __init__(self) -> None:
        self.runs: list[SweepRun] = []

    async def record(self, run: SweepRun) -> None:
        self.runs.append(run)

    async def list_recent(self, *, limit: int) -> Sequence[SweepRun]:
        return sorted(self.runs, key=lambda run: run.started_at, reverse=True)[:limit]


class ExpirationSweeper:
    """Runs one pass per job type; each row expires in its own transaction.

    Batches are fetched until the backlog is drained. A failing row is logged and
    counted, the rest of the batch continues. Rows already inactive are excluded
    by the candidate query, so reruns are no-ops.
    """

    def __init__(
        self,
        restrictions: RestrictionRepository,
        sweep_logs: SweepLogRepository,
        *,
        notifications: NotificationSink | None = None,
        clock: Clock = utcnow,
        batch_size: int | None = None,
    ) -> None:
        self._restrictions = restrictions
        self._logs = sweep_logs
        self._notifications = notifications
        self._clock = clock
        self._batch_size = batch_size or settings.moderation_sweep_batch_size
        self._running = asyncio.Lock()

    async def run(self, now: datetime | None = None) -> list[SweepRun]:
        async with self._running:
            at = now or self._clock()
            runs = []
            for job_type, kinds in SWEEP_JOBS:
                runs.append(await self._run_job(job_type, kinds, at))
            return runs

    async def run_once(self) -> list[SweepRun]:
        return await self.run()

    async def list_runs(self, *, limit: int = 20) -> Sequence[SweepRun]:
        return await self._logs.list_recent(limit=limit)

    async def _run_job(self, job_type: str, kinds: tuple[RestrictionKind, ...], now: datetime) -> SweepRun:
        run = SweepRun(job_type=job_type, started_at=self._clock())
        started = time.perf_counter()
        # Rows that failed (or were not expired) this run stay active; skip them on later batches
        skipped: set[str] = set()
        while True:
            limit = self._batch_size + len(skipped)
            try:
                fetched = await self._restrictions.list_expired(now=now, kinds=kinds, limit=limit)
            except Exception as exc:  # noqa: BLE001 - the failure is recorded on the sweep log
                run.status = SweepStatus.FAILED
                run.error_message = str(exc) or exc.__class__.__name__
                logger.error(
                    "sweep_batch_failed",
                    extra={"job_id": run.id, "job_type": job_type, "sqlstate": getattr(exc, "sqlstate", None)},
                    exc_info=True,
                )
                break
            candidates = [item for item in fetched if item.id not in skipped]
            for restriction in candidates:
                if not await self._expire_one(run, restriction, now):
                    skipped.add(restriction.id)
            if len(fetched) < limit or not candidates:
                break

        if run.status != SweepStatus.FAILED and run.failed_count:
            run.status = SweepStatus.PARTIAL
            run.error_message = f"{run.failed_count} row(s) failed to expire"
        elapsed = time.perf_counter() - started
        run.duration_ms = int(elapsed * 1000)
        obs_metrics.record_sweep(job_type, result=run.status, expired=run.expired_count)
        obs_metrics.observe_sweep_duration(elapsed)
        await self._logs.record(run)
        logger.info(
            "sweep_completed",
            extra={
                "job_id": run.id,
                "job_type": job_type,
                "expired": run.expired_count,
                "failed": run.failed_count,
                "status": run.status,
                "duration_ms": run.duration_ms,
            },
        )
        return run

    async def _expire_one(self, run: SweepRun, restriction: Restriction, now: datetime) -> bool:
        try:
            expired = await self._restrictions.expire(restriction.id, now=now)
        except Exception as exc:  # noqa: BLE001 - one bad row must not abort the sweep
            run.failed_count += 1
            logger.error(
                "sweep_row_failed",
                extra={
                    "job_id": run.id,
                    "job_type": run.job_type,
                    "restriction_id": restriction.id,
                    "sqlstate": getattr(exc, "sqlstate", None),
                },
                exc_info=True,
            )
            return False
        if not expired:
            return False
        run.expired_count += 1
        run.expired_ids.append(restriction.id)
        obs_metrics.restriction_deactivated(restriction.kind.value)
        title, message, metadata = expiration_notice(restriction.kind.value)
        await notify_best_effort(
            self._notifications,
            restriction.user_id,
            title,
            message,
            {**metadata, "restriction_id": restriction.id},
        )
        return True
