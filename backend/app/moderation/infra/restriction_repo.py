"""PostgreSQL persistence for user restrictions and the profile suspension shadow."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

import asyncpg

from app.moderation.domain.exceptions import AlreadyRestricted
from app.moderation.domain.restrictions import (
    Restriction,
    RestrictionKind,
    RestrictionRepository,
    SuspensionShadow,
)
from app.moderation.infra.pg_errors import as_uuid, id_str, translate_pg_errors

RESTRICTION_COLUMNS = (
    "id, user_id, restriction_type, reason, applied_by, related_action_id, "
    "expires_at, is_active, created_at, updated_at"
)


def row_to_restriction(row: asyncpg.Record) -> Restriction:
    return Restriction(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        kind=RestrictionKind(str(row["restriction_type"])),
        reason=str(row["reason"]),
        applied_by=str(row["applied_by"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        is_active=bool(row["is_active"]),
        related_action_id=id_str(row["related_action_id"]),
        updated_at=row["updated_at"],
    )


# Connection-level helpers shared with the action repository; callers own the transaction.


async def insert_restriction(conn: asyncpg.Connection, restriction: Restriction) -> Restriction:
    existing = await conn.fetchrow(
        f"""
        SELECT {RESTRICTION_COLUMNS}
        FROM user_restrictions
        WHERE user_id = $1 AND restriction_type = $2 AND is_active
        FOR UPDATE
        """,
        restriction.user_id,
        restriction.kind.value,
    )
    if existing is not None:
        current = row_to_restriction(existing)
        if current.in_force(restriction.created_at):
            raise AlreadyRestricted(
                restriction.user_id,
                restriction.kind.value,
                existing_id=current.id,
                expires_at=current.expires_at,
            )
        await deactivate_restriction(conn, current.id, now=restriction.created_at)
    try:
        row = await conn.fetchrow(
            f"""
            INSERT INTO user_restrictions (
                id, user_id, restriction_type, reason, applied_by, related_action_id,
                expires_at, is_active, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, TRUE, $8, $8)
            RETURNING {RESTRICTION_COLUMNS}
            """,
            as_uuid(restriction.id),
            restriction.user_id,
            restriction.kind.value,
            restriction.reason,
            restriction.applied_by,
            as_uuid(restriction.related_action_id),
            restriction.expires_at,
            restriction.created_at,
        )
    except asyncpg.exceptions.UniqueViolationError as exc:
        # Lost the race against a concurrent insert; the partial unique index decided
        raise AlreadyRestricted(restriction.user_id, restriction.kind.value) from exc
    if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
        raise RuntimeError("Failed to insert restriction")
    stored = row_to_restriction(row)
    if stored.kind is RestrictionKind.SUSPENDED:
        await sync_shadow(conn, stored.user_id, now=restriction.created_at)
    return stored


async def deactivate_restriction(conn: asyncpg.Connection, restriction_id: str, *, now: datetime) -> Restriction | None:
    row = await conn.fetchrow(
        f"""
        UPDATE user_restrictions
        SET is_active = FALSE, updated_at = $2
        WHERE id = $1 AND is_active
        RETURNING {RESTRICTION_COLUMNS}
        """,
        as_uuid(restriction_id),
        now,
    )
    if row is None:
        return None
    lifted = row_to_restriction(row)
    if lifted.kind is RestrictionKind.SUSPENDED:
        await sync_shadow(conn, lifted.user_id, now=now)
    return lifted


async def lock_active_for_action(conn: asyncpg.Connection, action_id: str) -> list[Restriction]:
    rows = await conn.fetch(
        f"""
        SELECT {RESTRICTION_COLUMNS}
        FROM user_restrictions
        WHERE related_action_id = $1 AND is_active
        FOR UPDATE
        """,
        as_uuid(action_id),
    )
    return [row_to_restriction(row) for row in rows]


async def sync_shadow(conn: asyncpg.Connection, user_id: str, *, now: datetime) -> None:
    """Mirror the remaining active suspension onto the profile, or clear it."""
    active = await conn.fetchrow(
        """
        SELECT expires_at, reason
        FROM user_restrictions
        WHERE user_id = $1 AND restriction_type = 'suspended' AND is_active
        ORDER BY created_at DESC
        LIMIT 1
        """,
        user_id,
    )
    await conn.execute(
        """
        INSERT INTO user_profiles (user_id, suspended_until, suspension_reason, updated_at)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (user_id) DO UPDATE
        SET suspended_until = EXCLUDED.suspended_until,
            suspension_reason = EXCLUDED.suspension_reason,
            updated_at = EXCLUDED.updated_at
        """,
        user_id,
        active["expires_at"] if active else None,
        active["reason"] if active else None,
        now,
    )


class PostgresRestrictionRepository(RestrictionRepository):
    """Stores restriction rows in user_restrictions."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @translate_pg_errors
    async def create(self, restriction: Restriction) -> Restriction:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                return await insert_restriction(conn, restriction)

    @translate_pg_errors
    async def get(self, restriction_id: str) -> Restriction | None:
        key = as_uuid(restriction_id)
        if key is None:
            return None
        row = await self._pool.fetchrow(
            f"SELECT {RESTRICTION_COLUMNS} FROM user_restrictions WHERE id = $1",
            key,
        )
        return row_to_restriction(row) if row else None

    @translate_pg_errors
    async def list_active(self, user_id: str, *, now: datetime) -> Sequence[Restriction]:
        rows = await self._pool.fetch(
            f"""
            SELECT {RESTRICTION_COLUMNS}
            FROM user_restrictions
            WHERE user_id = $1 AND is_active AND (expires_at IS NULL OR expires_at > $2)
            ORDER BY created_at DESC
            """,
            user_id,
            now,
        )
        return [row_to_restriction(row) for row in rows]

    @translate_pg_errors
    async def list_all(self, user_id: str) -> Sequence[Restriction]:
        rows = await self._pool.fetch(
            f"""
            SELECT {RESTRICTION_COLUMNS}
            FROM user_restrictions
            WHERE user_id = $1
            ORDER BY created_at DESC
            """,
            user_id,
        )
        return [row_to_restriction(row) for row in rows]

    @translate_pg_errors
    async def find_blocking(
        self,
        user_id: str,
        kinds: Iterable[RestrictionKind],
        *,
        now: datetime,
    ) -> Restriction | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {RESTRICTION_COLUMNS}
            FROM user_restrictions
            WHERE user_id = $1
              AND restriction_type = ANY($2::text[])
              AND is_active
              AND (expires_at IS NULL OR expires_at > $3)
            ORDER BY (restriction_type = 'suspended') DESC, created_at ASC
            LIMIT 1
            """,
            user_id,
            [kind.value for kind in kinds],
            now,
        )
        return row_to_restriction(row) if row else None

    @translate_pg_errors
    async def deactivate(self, restriction_id: str, *, now: datetime) -> Restriction | None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                return await deactivate_restriction(conn, restriction_id, now=now)

    @translate_pg_errors
    async def list_expired(
        self,
        *,
        now: datetime,
        kinds: Iterable[RestrictionKind],
        limit: int,
    ) -> Sequence[Restriction]:
        rows = await self._pool.fetch(
            f"""
            SELECT {RESTRICTION_COLUMNS}
            FROM user_restrictions
            WHERE is_active
              AND restriction_type = ANY($1::text[])
              AND expires_at IS NOT NULL
              AND expires_at <= $2
            ORDER BY expires_at ASC
            LIMIT $3
            """,
            [kind.value for kind in kinds],
            now,
            limit,
        )
        return [row_to_restriction(row) for row in rows]

    @translate_pg_errors
    async def expire(self, restriction_id: str, *, now: datetime) -> bool:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                locked = await conn.fetchrow(
                    """
                    SELECT id
                    FROM user_restrictions
                    WHERE id = $1 AND is_active AND expires_at IS NOT NULL AND expires_at <= $2
                    FOR UPDATE SKIP LOCKED
                    """,
                    as_uuid(restriction_id),
                    now,
                )
                if locked is None:
                    return False
                return await deactivate_restriction(conn, restriction_id, now=now) is not None

    @translate_pg_errors
    async def get_shadow(self, user_id: str) -> SuspensionShadow | None:
        row = await self._pool.fetchrow(
            "SELECT user_id, suspended_until, suspension_reason FROM user_profiles WHERE user_id = $1",
            user_id,
        )
        if row is None:
            return None
        return SuspensionShadow(
            user_id=str(row["user_id"]),
            suspended_until=row["suspended_until"],
            suspension_reason=row["suspension_reason"],
        )
