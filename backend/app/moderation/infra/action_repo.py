"""PostgreSQL persistence for the moderation action ledger."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Sequence

import asyncpg

from app.moderation.domain.actions import (
    ActionKind,
    ActionFilters,
    ActionMetadata,
    ActionRepository,
    ModerationAction,
    ReversalOutcome,
    TargetType,
)
from app.moderation.domain.exceptions import AlreadyReversed, ConflictError, NotFound
from app.moderation.domain.restrictions import Restriction
from app.moderation.domain.reversal_guard import ReversalGuard
from app.moderation.infra.pg_errors import as_uuid, id_str, translate_pg_errors
from app.moderation.infra.restriction_repo import (
    deactivate_restriction,
    insert_restriction,
    lock_active_for_action,
)

ACTION_COLUMNS = (
    "id, moderator_id, target_user_id, action_type, target_type, target_id, reason, duration_days, "
    "expires_at, related_report_id, internal_notes, notification_sent, notification_message, "
    "metadata, created_at, revoked_at, revoked_by"
)


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return dict(value)


def row_to_action(row: asyncpg.Record) -> ModerationAction:
    return ModerationAction(
        id=str(row["id"]),
        moderator_id=str(row["moderator_id"]),
        kind=ActionKind(str(row["action_type"])),
        reason=str(row["reason"]),
        created_at=row["created_at"],
        target_user_id=row["target_user_id"],
        target_type=TargetType(row["target_type"]) if row["target_type"] else None,
        target_id=row["target_id"],
        duration_days=row["duration_days"],
        expires_at=row["expires_at"],
        related_report_id=id_str(row["related_report_id"]),
        internal_notes=row["internal_notes"],
        notification_sent=bool(row["notification_sent"]),
        notification_message=row["notification_message"],
        revoked_at=row["revoked_at"],
        revoked_by=row["revoked_by"],
        metadata=ActionMetadata.from_dict(_load_json(row["metadata"])),
    )


class PostgresActionRepository(ActionRepository):
    """Stores ledger entries in moderation_actions.

    Every write path runs the reversal guard before issuing SQL; the
    ``enforce_reversal_immutability`` trigger backs it up at the storage layer.
    """

    def __init__(self, pool: asyncpg.Pool, *, guard: ReversalGuard | None = None) -> None:
        self._pool = pool
        self._guard = guard or ReversalGuard()

    @translate_pg_errors
    async def create(self, action: ModerationAction, restriction: Restriction | None) -> ModerationAction:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO moderation_actions (
                        id, moderator_id, target_user_id, action_type, target_type, target_id, reason,
                        duration_days, expires_at, related_report_id, internal_notes, notification_sent,
                        notification_message, metadata, created_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14::jsonb, $15)
                    RETURNING {ACTION_COLUMNS}
                    """,
                    as_uuid(action.id),
                    action.moderator_id,
                    action.target_user_id,
                    action.kind.value,
                    action.target_type.value if action.target_type else None,
                    action.target_id,
                    action.reason,
                    action.duration_days,
                    action.expires_at,
                    as_uuid(action.related_report_id),
                    action.internal_notes,
                    action.notification_sent,
                    action.notification_message,
                    json.dumps(action.metadata.to_dict()),
                    action.created_at,
                )
                if restriction is not None:
                    await insert_restriction(conn, restriction)
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to insert moderation action")
        return row_to_action(row)

    @translate_pg_errors
    async def get(self, action_id: str) -> ModerationAction | None:
        key = as_uuid(action_id)
        if key is None:
            return None
        row = await self._pool.fetchrow(f"SELECT {ACTION_COLUMNS} FROM moderation_actions WHERE id = $1", key)
        return row_to_action(row) if row else None

    @translate_pg_errors
    async def reverse(
        self,
        action_id: str,
        *,
        revoked_by: str,
        revoked_at: datetime,
        reason: str,
        is_self_reversal: bool,
    ) -> ReversalOutcome:
        key = as_uuid(action_id)
        if key is None:
            raise NotFound("action_not_found")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {ACTION_COLUMNS} FROM moderation_actions WHERE id = $1 FOR UPDATE",
                    key,
                )
                if row is None:
                    raise NotFound("action_not_found")
                current = row_to_action(row)
                if current.is_reversed:
                    raise AlreadyReversed(action_id, revoked_by=current.revoked_by, revoked_at=current.revoked_at)
                updated = current.reversed_by(
                    revoked_by,
                    at=revoked_at,
                    reason=reason,
                    is_self_reversal=is_self_reversal,
                )
                await self._guard.check_update(current, updated, actor_id=revoked_by)
                stored = await self._write(conn, updated)
                lifted = []
                for restriction in await lock_active_for_action(conn, action_id):
                    deactivated = await deactivate_restriction(conn, restriction.id, now=revoked_at)
                    if deactivated is not None:
                        lifted.append(deactivated)
        return ReversalOutcome(action=stored, lifted=lifted)

    @translate_pg_errors
    async def update(self, action: ModerationAction, *, actor_id: str | None) -> ModerationAction:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {ACTION_COLUMNS} FROM moderation_actions WHERE id = $1 FOR UPDATE",
                    as_uuid(action.id),
                )
                if row is None:
                    raise NotFound("action_not_found")
                await self._guard.check_update(row_to_action(row), action, actor_id=actor_id)
                return await self._write(conn, action)

    @translate_pg_errors
    async def delete(self, action_id: str, *, actor_id: str | None) -> None:
        key = as_uuid(action_id)
        if key is None:
            raise NotFound("action_not_found")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {ACTION_COLUMNS} FROM moderation_actions WHERE id = $1 FOR UPDATE",
                    key,
                )
                if row is None:
                    raise NotFound("action_not_found")
                await self._guard.check_delete(row_to_action(row), actor_id=actor_id)
                if await lock_active_for_action(conn, action_id):
                    raise ConflictError("action_has_active_restriction")
                await conn.execute("DELETE FROM moderation_actions WHERE id = $1", key)

    @translate_pg_errors
    async def list_created_between(self, start: datetime, end: datetime) -> Sequence[ModerationAction]:
        rows = await self._pool.fetch(
            f"""
            SELECT {ACTION_COLUMNS}
            FROM moderation_actions
            WHERE created_at >= $1 AND created_at <= $2
            ORDER BY created_at ASC
            """,
            start,
            end,
        )
        return [row_to_action(row) for row in rows]

    @translate_pg_errors
    async def list_actions(self, filters: ActionFilters, *, limit: int) -> Sequence[ModerationAction]:
        rows = await self._pool.fetch(
            f"""
            SELECT {ACTION_COLUMNS}
            FROM moderation_actions
            WHERE ($1::text IS NULL OR moderator_id = $1::text)
              AND ($2::text IS NULL OR target_user_id = $2::text)
              AND ($3::text IS NULL OR action_type = $3::text)
              AND ($4::boolean IS NULL OR (revoked_at IS NOT NULL) = $4::boolean)
              AND ($5::timestamptz IS NULL OR created_at >= $5::timestamptz)
              AND ($6::timestamptz IS NULL OR created_at <= $6::timestamptz)
            ORDER BY created_at DESC
            LIMIT $7
            """,
            filters.moderator_id,
            filters.target_user_id,
            filters.kind.value if filters.kind else None,
            filters.is_reversed,
            filters.created_from,
            filters.created_to,
            limit,
        )
        return [row_to_action(row) for row in rows]

    async def _write(self, conn: asyncpg.Connection, action: ModerationAction) -> ModerationAction:
        row = await conn.fetchrow(
            f"""
            UPDATE moderation_actions
            SET internal_notes = $2,
                notification_sent = $3,
                notification_message = $4,
                metadata = $5::jsonb,
                revoked_at = $6,
                revoked_by = $7
            WHERE id = $1
            RETURNING {ACTION_COLUMNS}
            """,
            as_uuid(action.id),
            action.internal_notes,
            action.notification_sent,
            action.notification_message,
            json.dumps(action.metadata.to_dict()),
            action.revoked_at,
            action.revoked_by,
        )
        if row is None:
            raise NotFound("action_not_found")
        return row_to_action(row)
