"""asyncpg exception mapping for the moderation repositories."""

from __future__ import annotations

import asyncio
import functools
from typing import Awaitable, Callable, TypeVar
from uuid import UUID

import asyncpg

from app.moderation.domain.exceptions import ImmutabilityViolation, TransientStoreError

T = TypeVar("T")

IMMUTABLE_MARKER = "immutable_record"

_TRANSIENT_ERRORS = (
    asyncpg.exceptions.QueryCanceledError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncio.TimeoutError,
    ConnectionError,
)


def translate_pg_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Turn driver failures into domain errors; everything else propagates untouched."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except asyncpg.exceptions.RaiseError as exc:
            if IMMUTABLE_MARKER in str(exc):
                raise ImmutabilityViolation(context={"sqlstate": exc.sqlstate}) from exc
            raise
        except _TRANSIENT_ERRORS as exc:
            raise TransientStoreError(sqlstate=getattr(exc, "sqlstate", None)) from exc

    return wrapper


def as_uuid(value: str | None) -> UUID | None:
    """Parse an id from the outside world; malformed ids simply match nothing."""
    if value is None:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def id_str(value) -> str | None:
    return str(value) if value is not None else None
