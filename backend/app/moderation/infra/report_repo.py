"""PostgreSQL persistence for the report queue."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

import asyncpg

from app.moderation.domain.exceptions import InvalidTransition, NotFound
from app.moderation.domain.reports import Report, ReportKind, ReportReason, ReportRepository, ReportStatus
from app.moderation.infra.pg_errors import as_uuid, translate_pg_errors

REPORT_COLUMNS = (
    "id, reporter_id, reported_user_id, report_type, target_id, reason, description, status, priority, "
    "moderator_flagged, reviewed_by, reviewed_at, resolution_notes, action_taken, created_at, updated_at"
)


def _row_to_report(row: asyncpg.Record) -> Report:
    return Report(
        id=str(row["id"]),
        reporter_id=row["reporter_id"],
        kind=ReportKind(str(row["report_type"])),
        target_id=str(row["target_id"]),
        reason=ReportReason(str(row["reason"])),
        status=ReportStatus(str(row["status"])),
        priority=int(row["priority"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        reported_user_id=row["reported_user_id"],
        description=row["description"],
        moderator_flagged=bool(row["moderator_flagged"]),
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        resolution_notes=row["resolution_notes"],
        action_taken=row["action_taken"],
    )


class PostgresReportRepository(ReportRepository):
    """Stores reports in moderation_reports."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_pg_errors
    async def create(self, report: Report) -> Report:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO moderation_reports (
                id, reporter_id, reported_user_id, report_type, target_id, reason, description, status,
                priority, moderator_flagged, reviewed_by, reviewed_at, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            RETURNING {REPORT_COLUMNS}
            """,
            as_uuid(report.id),
            report.reporter_id,
            report.reported_user_id,
            report.kind.value,
            report.target_id,
            report.reason.value,
            report.description,
            report.status.value,
            report.priority,
            report.moderator_flagged,
            report.reviewed_by,
            report.reviewed_at,
            report.created_at,
            report.updated_at,
        )
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to insert report")
        return _row_to_report(row)

    @translate_pg_errors
    async def get(self, report_id: str) -> Report | None:
        key = as_uuid(report_id)
        if key is None:
            return None
        row = await self._pool.fetchrow(f"SELECT {REPORT_COLUMNS} FROM moderation_reports WHERE id = $1", key)
        return _row_to_report(row) if row else None

    @translate_pg_errors
    async def find_recent_duplicate(
        self,
        reporter_id: str,
        kind: ReportKind,
        target_id: str,
        *,
        since: datetime,
    ) -> Report | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {REPORT_COLUMNS}
            FROM moderation_reports
            WHERE reporter_id = $1 AND report_type = $2 AND target_id = $3 AND created_at >= $4
            ORDER BY created_at DESC
            LIMIT 1
            """,
            reporter_id,
            kind.value,
            target_id,
            since,
        )
        return _row_to_report(row) if row else None

    @translate_pg_errors
    async def transition(self, report: Report, *, expected_status: ReportStatus) -> Report:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    UPDATE moderation_reports
                    SET status = $3,
                        reviewed_by = $4,
                        reviewed_at = $5,
                        resolution_notes = $6,
                        action_taken = $7,
                        updated_at = $8
                    WHERE id = $1 AND status = $2
                    RETURNING {REPORT_COLUMNS}
                    """,
                    as_uuid(report.id),
                    expected_status.value,
                    report.status.value,
                    report.reviewed_by,
                    report.reviewed_at,
                    report.resolution_notes,
                    report.action_taken,
                    report.updated_at,
                )
                if row is not None:
                    return _row_to_report(row)
                current = await conn.fetchval(
                    "SELECT status FROM moderation_reports WHERE id = $1",
                    as_uuid(report.id),
                )
        if current is None:
            raise NotFound("report_not_found")
        raise InvalidTransition(str(current), report.status.value)

    @translate_pg_errors
    async def update_notes(self, report_id: str, *, notes: str, now: datetime) -> Report:
        row = await self._pool.fetchrow(
            f"""
            UPDATE moderation_reports
            SET resolution_notes = $2, updated_at = $3
            WHERE id = $1
            RETURNING {REPORT_COLUMNS}
            """,
            as_uuid(report_id),
            notes,
            now,
        )
        if row is None:
            raise NotFound("report_not_found")
        return _row_to_report(row)

    @translate_pg_errors
    async def list_queue(
        self,
        *,
        statuses: Iterable[ReportStatus],
        max_priority: int | None,
        limit: int,
    ) -> Sequence[Report]:
        rows = await self._pool.fetch(
            f"""
            SELECT {REPORT_COLUMNS}
            FROM moderation_reports
            WHERE status = ANY($1::text[]) AND ($2::int IS NULL OR priority <= $2::int)
            ORDER BY priority ASC, created_at ASC
            LIMIT $3
            """,
            [status.value for status in statuses],
            max_priority,
            limit,
        )
        return [_row_to_report(row) for row in rows]
