from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import asyncpg
import pytest

from app.moderation.domain import container
from app.moderation.domain.restrictions import InMemoryRestrictionRepository, RestrictionRepository
from app.moderation.infra.action_repo import PostgresActionRepository
from app.moderation.infra.report_repo import PostgresReportRepository
from app.moderation.infra.restriction_repo import PostgresRestrictionRepository
from app.moderation.infra.sinks import PostgresNotificationSink, PostgresRoleDirectory
from app.moderation.workers import runner


class CountingWorker:
    def __init__(self, failures: int = 0) -> None:
        self.calls = 0
        self.failures = failures

    async def run_once(self) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("tick failed")


def test_configure_postgres_uses_production_repositories() -> None:
    pool = MagicMock(spec=asyncpg.Pool)
    container.configure_postgres(pool)

    assert isinstance(container.get_restriction_service()._repo, PostgresRestrictionRepository)
    assert isinstance(container.get_action_ledger()._repo, PostgresActionRepository)
    assert isinstance(container.get_report_service()._repo, PostgresReportRepository)
    assert isinstance(container.get_role_directory(), PostgresRoleDirectory)
    assert isinstance(container.get_notification_sink(), PostgresNotificationSink)


def test_configure_rejects_unpaired_custom_restriction_store() -> None:
    with pytest.raises(ValueError):
        container.configure(restriction_repository=MagicMock(spec=RestrictionRepository))


def test_configure_resets_to_fresh_stores() -> None:
    container.configure()
    first = container.get_restriction_service()._repo
    container.configure()
    second = container.get_restriction_service()._repo

    assert isinstance(second, InMemoryRestrictionRepository)
    assert first is not second


@pytest.mark.asyncio
async def test_sweep_loop_survives_failed_ticks() -> None:
    worker = CountingWorker(failures=1)
    task = asyncio.create_task(runner._run_forever(worker, 0))
    for _ in range(50):
        if worker.calls >= 3:
            break
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert worker.calls >= 3


@pytest.mark.asyncio
async def test_sweep_worker_runs_container_sweeper(moderator, clock) -> None:
    service = container.get_restriction_service()
    await service.apply_restriction(moderator, user_id="u", kind="posting_disabled", reason="r", duration_days=1)
    clock.advance(days=2)

    await runner.SweepWorker().run_once()

    assert await service.can_perform("u", "post")
    runs = await container.get_expiration_sweeper().list_runs()
    assert {run.job_type for run in runs} == {"restriction_expiration", "suspension_expiration"}
