from datetime import datetime, timedelta

import pytest

from app.moderation.domain import container
from app.moderation.domain.expiration import ExpirationSweeper, InMemorySweepLogRepository, SweepStatus
from app.moderation.domain.notifications import InMemoryNotificationSink
from app.moderation.domain.restrictions import InMemoryRestrictionRepository, Restriction, RestrictionKind


class FlakyRestrictionRepository(InMemoryRestrictionRepository):
    def __init__(self, failing_ids: set[str] | None = None, *, broken_listing: bool = False) -> None:
        super().__init__()
        self.failing_ids = failing_ids or set()
        self.broken_listing = broken_listing

    async def list_expired(self, *, now, kinds, limit):
        if self.broken_listing:
            raise ConnectionError("database went away")
        return await super().list_expired(now=now, kinds=kinds, limit=limit)

    async def expire(self, restriction_id: str, *, now: datetime) -> bool:
        if restriction_id in self.failing_ids:
            raise RuntimeError("row locked")
        return await super().expire(restriction_id, now=now)


def _restriction(user_id: str, kind: RestrictionKind, *, now: datetime, days: int | None) -> Restriction:
    return Restriction.new(user_id=user_id, kind=kind, reason="r", applied_by="mod-1", now=now, duration_days=days)


@pytest.mark.asyncio
async def test_sweep_expires_due_rows_and_notifies(moderator, clock) -> None:
    service = container.get_restriction_service()
    ledger = container.get_action_ledger()
    await service.apply_restriction(moderator, user_id="u1", kind="posting_disabled", reason="r", duration_days=1)
    await service.apply_restriction(moderator, user_id="u2", kind="upload_disabled", reason="r", duration_days=10)
    await service.apply_restriction(moderator, user_id="u3", kind="commenting_disabled", reason="r")
    await ledger.record_action(moderator, kind="user_suspended", target_user_id="u4", reason="r", duration_days=1)
    clock.advance(days=1, minutes=1)

    runs = await container.get_expiration_sweeper().run()

    by_job = {run.job_type: run for run in runs}
    assert set(by_job) == {"restriction_expiration", "suspension_expiration"}
    assert by_job["restriction_expiration"].expired_count == 1
    assert by_job["suspension_expiration"].expired_count == 1
    assert all(run.status == SweepStatus.SUCCESS for run in runs)

    assert await service.can_perform("u1", "post")
    assert not await service.can_perform("u2", "upload")
    assert not await service.can_perform("u3", "comment")
    assert not (await service.get_suspension_status("u4")).is_suspended

    sink = container.get_notification_sink()
    expired = [item for item in sink.sent if item.metadata.get("moderation_action") == "restriction_expired"]
    assert sorted(item.user_id for item in expired) == ["u1", "u4"]


@pytest.mark.asyncio
async def test_sweep_is_idempotent(moderator, clock) -> None:
    service = container.get_restriction_service()
    await service.apply_restriction(moderator, user_id="u1", kind="posting_disabled", reason="r", duration_days=1)
    clock.advance(days=2)
    sweeper = container.get_expiration_sweeper()

    first = await sweeper.run()
    second = await sweeper.run()

    assert sum(run.expired_count for run in first) == 1
    assert sum(run.expired_count for run in second) == 0
    assert len(await sweeper.list_runs(limit=10)) == 4


@pytest.mark.asyncio
async def test_sweep_continues_past_failing_row(clock) -> None:
    repo = FlakyRestrictionRepository()
    start = clock.now - timedelta(days=3)
    good = await repo.create(_restriction("u1", RestrictionKind.POSTING_DISABLED, now=start, days=1))
    bad = await repo.create(_restriction("u2", RestrictionKind.POSTING_DISABLED, now=start, days=1))
    repo.failing_ids.add(bad.id)
    logs = InMemorySweepLogRepository()
    sweeper = ExpirationSweeper(repo, logs, notifications=InMemoryNotificationSink(), clock=clock)

    runs = await sweeper.run()

    restriction_run = next(run for run in runs if run.job_type == "restriction_expiration")
    assert restriction_run.status == SweepStatus.PARTIAL
    assert restriction_run.expired_count == 1
    assert restriction_run.failed_count == 1
    assert restriction_run.expired_ids == [good.id]
    assert "1 row(s) failed" in restriction_run.error_message
    assert (await repo.get(bad.id)).is_active
    assert len(logs.runs) == 2


@pytest.mark.asyncio
async def test_sweep_records_batch_failure(clock) -> None:
    logs = InMemorySweepLogRepository()
    sweeper = ExpirationSweeper(FlakyRestrictionRepository(broken_listing=True), logs, clock=clock)

    runs = await sweeper.run()

    assert [run.status for run in runs] == [SweepStatus.FAILED, SweepStatus.FAILED]
    assert runs[0].error_message == "database went away"
    assert [run.id for run in logs.runs] == [run.id for run in runs]


@pytest.mark.asyncio
async def test_sweep_drains_backlog_in_batches(clock) -> None:
    repo = InMemoryRestrictionRepository()
    start = clock.now - timedelta(days=5)
    for index in range(3):
        await repo.create(_restriction(f"u{index}", RestrictionKind.UPLOAD_DISABLED, now=start, days=1))
    sink = InMemoryNotificationSink()
    sweeper = ExpirationSweeper(repo, InMemorySweepLogRepository(), notifications=sink, clock=clock, batch_size=2)

    runs = await sweeper.run()

    assert runs[0].expired_count == 3
    assert runs[0].status == SweepStatus.SUCCESS
    assert await repo.list_expired(now=clock.now, kinds=[RestrictionKind.UPLOAD_DISABLED], limit=10) == []
    assert sorted(item.user_id for item in sink.sent) == ["u0", "u1", "u2"]


@pytest.mark.asyncio
async def test_stuck_rows_do_not_stall_the_drain(clock) -> None:
    repo = FlakyRestrictionRepository()
    start = clock.now - timedelta(days=5)
    created = [
        await repo.create(_restriction(f"u{index}", RestrictionKind.POSTING_DISABLED, now=start, days=1))
        for index in range(5)
    ]
    repo.failing_ids.update({created[0].id, created[1].id})
    sweeper = ExpirationSweeper(repo, InMemorySweepLogRepository(), clock=clock, batch_size=2)

    run = (await sweeper.run())[0]

    assert run.status == SweepStatus.PARTIAL
    assert run.failed_count == 2
    assert sorted(run.expired_ids) == sorted(item.id for item in created[2:])
