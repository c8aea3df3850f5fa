"""PostgreSQL-backed collaborators: sweep log, notification outbox, security events, roles."""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

import asyncpg

from app.moderation.domain.expiration import SweepLogRepository, SweepRun
from app.moderation.domain.notifications import NotificationSink
from app.moderation.domain.rbac import ADMIN_ROLES, MODERATOR_ROLES, RoleDirectory
from app.moderation.domain.security_events import SecurityEventSink
from app.moderation.infra.pg_errors import as_uuid, translate_pg_errors


class PostgresSweepLogRepository(SweepLogRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_pg_errors
    async def record(self, run: SweepRun) -> None:
        await self._pool.execute(
            """
            INSERT INTO expiration_logs (
                id, job_type, expired_count, failed_count, duration_ms, status, error_message, started_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            as_uuid(run.id),
            run.job_type,
            run.expired_count,
            run.failed_count,
            run.duration_ms,
            run.status,
            run.error_message,
            run.started_at,
        )

    @translate_pg_errors
    async def list_recent(self, *, limit: int) -> Sequence[SweepRun]:
        rows = await self._pool.fetch(
            """
            SELECT id, job_type, expired_count, failed_count, duration_ms, status, error_message, started_at
            FROM expiration_logs
            ORDER BY started_at DESC
            LIMIT $1
            """,
            limit,
        )
        return [
            SweepRun(
                id=str(row["id"]),
                job_type=str(row["job_type"]),
                started_at=row["started_at"],
                expired_count=int(row["expired_count"]),
                failed_count=int(row["failed_count"]),
                duration_ms=int(row["duration_ms"]),
                status=str(row["status"]),
                error_message=row["error_message"],
            )
            for row in rows
        ]


class PostgresNotificationSink(NotificationSink):
    """Writes to the notifications outbox; delivery happens downstream."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_pg_errors
    async def notify(self, user_id: str, title: str, message: str, metadata: Mapping[str, Any]) -> None:
        await self._pool.execute(
            """
            INSERT INTO notifications (user_id, title, message, metadata)
            VALUES ($1, $2, $3, $4::jsonb)
            """,
            user_id,
            title,
            message,
            json.dumps(dict(metadata), default=str),
        )


class PostgresSecurityEventSink(SecurityEventSink):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_pg_errors
    async def log_security_event(
        self,
        kind: str,
        severity: str,
        user_id: str | None,
        details: Mapping[str, Any],
    ) -> None:
        await self._pool.execute(
            """
            INSERT INTO security_events (event_type, severity, user_id, details)
            VALUES ($1, $2, $3, $4::jsonb)
            """,
            kind,
            severity,
            user_id,
            json.dumps(dict(details), default=str),
        )


class PostgresRoleDirectory(RoleDirectory):
    """Answers role questions from the user_roles table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def _has_any(self, user_id: str, roles: frozenset[str]) -> bool:
        value = await self._pool.fetchval(
            "SELECT EXISTS (SELECT 1 FROM user_roles WHERE user_id = $1 AND role = ANY($2::text[]))",
            user_id,
            sorted(roles),
        )
        return bool(value)

    @translate_pg_errors
    async def is_admin(self, user_id: str) -> bool:
        return await self._has_any(user_id, ADMIN_ROLES)

    @translate_pg_errors
    async def is_moderator(self, user_id: str) -> bool:
        return await self._has_any(user_id, ADMIN_ROLES | MODERATOR_ROLES)
