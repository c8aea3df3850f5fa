import asyncio

import asyncpg
import pytest

from app.moderation.domain.exceptions import ImmutabilityViolation, TransientStoreError
from app.moderation.infra.pg_errors import as_uuid, translate_pg_errors


def _raising(exc: Exception):
    @translate_pg_errors
    async def _call():
        raise exc

    return _call


@pytest.mark.asyncio
async def test_trigger_rejection_becomes_immutability_violation() -> None:
    with pytest.raises(ImmutabilityViolation) as exc:
        await _raising(asyncpg.exceptions.RaiseError("immutable_record: reversed action cannot be deleted"))()
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_other_raise_errors_propagate() -> None:
    with pytest.raises(asyncpg.exceptions.RaiseError):
        await _raising(asyncpg.exceptions.RaiseError("something else"))()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        asyncpg.exceptions.QueryCanceledError("canceling statement due to statement timeout"),
        ConnectionResetError("reset by peer"),
        asyncio.TimeoutError(),
    ],
)
async def test_transient_failures_are_retryable(error) -> None:
    with pytest.raises(TransientStoreError) as exc:
        await _raising(error)()
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_integrity_errors_are_not_masked() -> None:
    with pytest.raises(asyncpg.exceptions.UniqueViolationError):
        await _raising(asyncpg.exceptions.UniqueViolationError("duplicate key"))()


def test_as_uuid_ignores_malformed_ids() -> None:
    assert as_uuid("not-a-uuid") is None
    assert as_uuid(None) is None
    assert str(as_uuid("00000000-0000-0000-0000-000000000001")) == "00000000-0000-0000-0000-000000000001"
