from datetime import timedelta

import pytest

from app.moderation.domain import container
from app.moderation.domain.actions import (
    ActionAmendment,
    ActionKind,
    ActionLedger,
    InMemoryActionRepository,
    StateChangeKind,
)
from app.moderation.domain.exceptions import (
    AlreadyReversed,
    AlreadyRestricted,
    ConflictError,
    Forbidden,
    ImmutabilityViolation,
    NotFound,
    NotReversed,
    RateLimited,
    ValidationFailed,
)
from app.moderation.domain.notifications import NotificationSink
from app.moderation.domain.restrictions import InMemoryRestrictionRepository, RestrictionKind
from app.moderation.domain.security_events import SecurityEventKind


class ExplodingSink(NotificationSink):
    async def notify(self, user_id, title, message, metadata) -> None:
        raise RuntimeError("delivery down")


@pytest.mark.asyncio
async def test_suspension_creates_linked_restriction_and_notifies(moderator, clock) -> None:
    ledger = container.get_action_ledger()
    action = await ledger.record_action(
        moderator,
        kind="user_suspended",
        target_user_id="user-9",
        reason="Repeated harassment",
        duration_days=7,
    )

    assert action.expires_at == clock.now + timedelta(days=7)
    assert action.notification_sent is True
    assert action.metadata.restriction_type == RestrictionKind.SUSPENDED.value
    assert [change.action for change in action.metadata.state_changes] == [StateChangeKind.APPLIED]

    restrictions = await container.get_restriction_service().list_active_restrictions("user-9")
    assert [item.id for item in restrictions] == [action.metadata.restriction_id]
    assert restrictions[0].related_action_id == action.id

    sent = container.get_notification_sink().for_user("user-9")
    assert sent[0].title == "Account Suspended"
    assert "Repeated harassment" in sent[0].message


@pytest.mark.asyncio
async def test_ban_is_permanent_regardless_of_duration(admin) -> None:
    ledger = container.get_action_ledger()
    action = await ledger.record_action(
        admin, kind="user_banned", target_user_id="user-9", reason="Spam ring", duration_days=30
    )
    assert action.duration_days is None
    assert action.expires_at is None
    status = await container.get_restriction_service().get_suspension_status("user-9")
    assert status.is_suspended and status.is_permanent


@pytest.mark.asyncio
async def test_only_admins_record_bans(moderator) -> None:
    ledger = container.get_action_ledger()
    with pytest.raises(Forbidden) as exc:
        await ledger.record_action(moderator, kind="user_banned", target_user_id="u9", reason="Spam ring")
    assert exc.value.detail == "admin_required"
    assert exc.value.context["rule"] == "ban"
    assert not (await container.get_restriction_service().get_suspension_status("u9")).is_suspended


@pytest.mark.asyncio
async def test_second_suspension_conflicts_with_active_one(moderator) -> None:
    ledger = container.get_action_ledger()
    await ledger.record_action(moderator, kind="user_suspended", target_user_id="u", reason="r", duration_days=3)
    with pytest.raises(AlreadyRestricted) as exc:
        await ledger.record_action(moderator, kind="user_suspended", target_user_id="u", reason="r", duration_days=3)
    assert exc.value.status_code == 409
    assert exc.value.context["restriction_type"] == "suspended"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs, field",
    [
        ({"kind": "content_hidden", "reason": "x", "target_user_id": "u"}, "action_type"),
        ({"kind": "user_warned", "reason": "   ", "target_user_id": "u"}, "reason"),
        ({"kind": "user_suspended", "reason": "x"}, "target_user_id"),
        ({"kind": "content_removed", "reason": "x"}, "target_type"),
        ({"kind": "user_suspended", "reason": "x", "target_user_id": "u", "duration_days": 400}, "duration_days"),
        ({"kind": "restriction_applied", "reason": "x", "target_user_id": "u"}, "restriction_type"),
        ({"kind": "user_warned", "reason": "x", "target_user_id": "u", "restriction_kind": "suspended"}, "restriction_type"),
    ],
)
async def test_record_action_validation(moderator, kwargs, field) -> None:
    ledger = container.get_action_ledger()
    with pytest.raises(ValidationFailed) as exc:
        await ledger.record_action(moderator, **kwargs)
    assert exc.value.field == field


@pytest.mark.asyncio
async def test_staff_cannot_target_self_or_admins(moderator, admin) -> None:
    ledger = container.get_action_ledger()
    with pytest.raises(Forbidden) as exc:
        await ledger.record_action(moderator, kind="user_warned", target_user_id="mod-1", reason="x")
    assert exc.value.detail == "cannot_target_self"

    with pytest.raises(Forbidden) as exc:
        await ledger.record_action(moderator, kind="user_warned", target_user_id="admin-1", reason="x")
    assert exc.value.detail == "cannot_target_admin"
    events = container.get_security_event_sink().of_kind(SecurityEventKind.UNAUTHORIZED_ACTION_ON_ADMIN)
    assert [(event.user_id, event.severity) for event in events] == [("mod-1", "high")]
    assert events[0].details["target_user_id"] == "admin-1"

    # Admins may act on moderators
    action = await ledger.record_action(admin, kind="user_warned", target_user_id="mod-1", reason="x")
    assert action.target_user_id == "mod-1"


@pytest.mark.asyncio
async def test_regular_users_cannot_record_actions() -> None:
    from app.moderation.domain.rbac import StaffContext

    ledger = container.get_action_ledger()
    with pytest.raises(Forbidden) as exc:
        await ledger.record_action(StaffContext(actor_id="user-1"), kind="user_warned", target_user_id="u", reason="x")
    assert exc.value.detail == "moderator_required"


@pytest.mark.asyncio
async def test_unknown_related_report_is_rejected(moderator) -> None:
    ledger = container.get_action_ledger()
    with pytest.raises(NotFound) as exc:
        await ledger.record_action(
            moderator,
            kind="user_warned",
            target_user_id="u",
            reason="x",
            related_report_id="00000000-0000-0000-0000-000000000000",
        )
    assert exc.value.detail == "report_not_found"


@pytest.mark.asyncio
async def test_action_rate_limit(moderator, clock) -> None:
    restrictions = InMemoryRestrictionRepository()
    ledger = ActionLedger(InMemoryActionRepository(restrictions), clock=clock, action_limit=1, action_window_seconds=60)
    await ledger.record_action(moderator, kind="user_warned", target_user_id="u1", reason="x")
    with pytest.raises(RateLimited) as exc:
        await ledger.record_action(moderator, kind="user_warned", target_user_id="u2", reason="x")
    assert exc.value.detail == "action_rate_limited"
    assert exc.value.context["window_seconds"] == 60


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_action(moderator, clock) -> None:
    restrictions = InMemoryRestrictionRepository()
    ledger = ActionLedger(
        InMemoryActionRepository(restrictions),
        notifications=ExplodingSink(),
        rate_limiter=None,
        clock=clock,
    )
    action = await ledger.record_action(moderator, kind="user_warned", target_user_id="u", reason="x")
    assert action.notification_sent is False
    assert (await ledger.get_action(action.id)).id == action.id


@pytest.mark.asyncio
async def test_admin_reversal_lifts_restriction_and_notifies(moderator, admin, clock) -> None:
    ledger = container.get_action_ledger()
    action = await ledger.record_action(
        moderator, kind="user_suspended", target_user_id="user-9", reason="r", duration_days=7
    )
    clock.advance(hours=5)

    outcome = await ledger.reverse_action(admin, action.id, reason="Appeal accepted")

    assert outcome.action.revoked_by == "admin-1"
    assert outcome.action.revoked_at == clock.now
    assert outcome.action.metadata.reversal_reason == "Appeal accepted"
    assert outcome.action.metadata.is_self_reversal is False
    assert [change.action for change in outcome.action.metadata.state_changes] == [
        StateChangeKind.APPLIED,
        StateChangeKind.REVERSED,
    ]
    assert [item.id for item in outcome.lifted] == [action.metadata.restriction_id]

    service = container.get_restriction_service()
    assert await service.can_perform("user-9", "post")
    assert not (await service.get_suspension_status("user-9")).is_suspended
    titles = [item.title for item in container.get_notification_sink().for_user("user-9")]
    assert titles[-1] == "Suspension Lifted"


@pytest.mark.asyncio
async def test_reversing_twice_reports_original_reversal(admin, moderator) -> None:
    ledger = container.get_action_ledger()
    action = await ledger.record_action(moderator, kind="user_warned", target_user_id="u", reason="x")
    await ledger.reverse_action(admin, action.id, reason="mistake")
    with pytest.raises(AlreadyReversed) as exc:
        await ledger.reverse_action(admin, action.id, reason="again")
    assert exc.value.revoked_by == "admin-1"
    assert "already reversed by admin-1" in str(exc.value)


@pytest.mark.asyncio
async def test_moderator_self_reversal_is_flagged(moderator) -> None:
    ledger = container.get_action_ledger()
    action = await ledger.record_action(moderator, kind="user_warned", target_user_id="u", reason="x")
    outcome = await ledger.reverse_action(moderator, action.id, reason="wrong user")

    assert outcome.action.metadata.is_self_reversal is True
    assert outcome.action.metadata.state_changes[-1].is_self_action is True
    events = container.get_security_event_sink().of_kind(SecurityEventKind.SELF_REVERSAL)
    assert len(events) == 1
    assert events[0].severity == "low"
    assert events[0].details["action_id"] == action.id


@pytest.mark.asyncio
async def test_moderator_reversal_limits(moderator, other_moderator, admin) -> None:
    ledger = container.get_action_ledger()
    others = await ledger.record_action(other_moderator, kind="user_warned", target_user_id="u", reason="x")
    with pytest.raises(Forbidden) as exc:
        await ledger.reverse_action(moderator, others.id, reason="nope")
    assert exc.value.detail == "admin_required"

    ban = await ledger.record_action(admin, kind="user_banned", target_user_id="u2", reason="x")
    with pytest.raises(Forbidden) as exc:
        await ledger.reverse_action(moderator, ban.id, reason="nope")
    assert exc.value.detail == "admin_required"

    # An admin may reverse a ban
    outcome = await ledger.reverse_action(admin, ban.id, reason="overturned")
    assert outcome.action.is_reversed


@pytest.mark.asyncio
async def test_reapply_creates_new_entry(moderator, admin) -> None:
    ledger = container.get_action_ledger()
    original = await ledger.record_action(
        moderator, kind="restriction_applied", target_user_id="u", reason="spam", restriction_kind="posting_disabled"
    )
    with pytest.raises(NotReversed):
        await ledger.reapply_action(admin, original.id)

    await ledger.reverse_action(admin, original.id, reason="too harsh")
    again = await ledger.reapply_action(admin, original.id, reason="evidence confirmed")

    assert again.id != original.id
    assert again.metadata.reapplied_from == original.id
    assert again.metadata.restriction_type == "posting_disabled"
    assert again.metadata.state_changes[0].action is StateChangeKind.REAPPLIED
    assert not await container.get_restriction_service().can_perform("u", "post")
    still_reversed = await ledger.get_action(original.id)
    assert still_reversed.is_reversed


@pytest.mark.asyncio
async def test_amend_rules(moderator, admin) -> None:
    ledger = container.get_action_ledger()
    action = await ledger.record_action(moderator, kind="user_warned", target_user_id="u", reason="x")

    with pytest.raises(Forbidden):
        await ledger.amend_action(moderator, action.id, ActionAmendment(internal_notes="n"))
    with pytest.raises(ValidationFailed):
        await ledger.amend_action(admin, action.id, ActionAmendment(revoked_by="admin-1"))
    with pytest.raises(ValidationFailed):
        await ledger.amend_action(admin, action.id, ActionAmendment(extra_metadata={"reversal_reason": "sneaky"}))

    amended = await ledger.amend_action(
        admin, action.id, ActionAmendment(internal_notes="checked", extra_metadata={"ticket": "T-1"})
    )
    assert amended.internal_notes == "checked"
    assert amended.metadata.to_dict()["ticket"] == "T-1"


@pytest.mark.asyncio
async def test_reversed_entry_rejects_tampering(moderator, admin) -> None:
    ledger = container.get_action_ledger()
    action = await ledger.record_action(moderator, kind="user_warned", target_user_id="u", reason="x")
    await ledger.reverse_action(admin, action.id, reason="mistake")

    with pytest.raises(ImmutabilityViolation) as exc:
        await ledger.amend_action(admin, action.id, ActionAmendment(revoked_by="mod-2"))
    assert exc.value.to_payload() == {"detail": "immutable_record"}
    with pytest.raises(ImmutabilityViolation):
        await ledger.amend_action(admin, action.id, ActionAmendment(reversal_reason=None))
    with pytest.raises(ImmutabilityViolation):
        await ledger.delete_action(admin, action.id)

    events = container.get_security_event_sink().of_kind(SecurityEventKind.REVERSAL_MODIFICATION_ATTEMPT)
    assert [event.details["operation"] for event in events] == ["update", "update", "delete"]
    assert all(event.severity == "high" for event in events)

    # Notes stay editable after reversal
    amended = await ledger.amend_action(admin, action.id, ActionAmendment(internal_notes="appeal #12"))
    assert amended.internal_notes == "appeal #12"
    assert amended.revoked_by == "admin-1"


@pytest.mark.asyncio
async def test_delete_requires_admin_and_no_active_restriction(moderator, admin) -> None:
    ledger = container.get_action_ledger()
    warning = await ledger.record_action(moderator, kind="user_warned", target_user_id="u", reason="x")
    suspension = await ledger.record_action(
        moderator, kind="user_suspended", target_user_id="u", reason="x", duration_days=1
    )

    with pytest.raises(Forbidden):
        await ledger.delete_action(moderator, warning.id)
    with pytest.raises(ConflictError) as exc:
        await ledger.delete_action(admin, suspension.id)
    assert exc.value.detail == "action_has_active_restriction"

    await ledger.delete_action(admin, warning.id)
    with pytest.raises(NotFound):
        await ledger.get_action(warning.id)


@pytest.mark.asyncio
async def test_view_action_requires_staff(moderator) -> None:
    from app.moderation.domain.rbac import StaffContext

    ledger = container.get_action_ledger()
    action = await ledger.record_action(moderator, kind=ActionKind.USER_WARNED, target_user_id="u", reason="x")
    assert (await ledger.view_action(moderator, action.id)).kind is ActionKind.USER_WARNED
    with pytest.raises(Forbidden):
        await ledger.view_action(StaffContext(actor_id="u"), action.id)


@pytest.mark.asyncio
async def test_action_log_filters_newest_first(moderator, other_moderator, admin, clock) -> None:
    ledger = container.get_action_ledger()
    start = clock.now
    first = await ledger.record_action(moderator, kind="user_warned", target_user_id="u1", reason="a")
    clock.advance(minutes=5)
    second = await ledger.record_action(other_moderator, kind="user_warned", target_user_id="u2", reason="b")
    clock.advance(minutes=5)
    third = await ledger.record_action(
        moderator, kind="user_suspended", target_user_id="u1", reason="c", duration_days=2
    )
    await ledger.reverse_action(admin, third.id, reason="overturned")

    everything = await ledger.list_actions(admin)
    assert [item.id for item in everything] == [third.id, second.id, first.id]

    by_mod = await ledger.list_actions(admin, moderator_id="mod-1")
    assert [item.id for item in by_mod] == [third.id, first.id]
    history = await ledger.list_actions(admin, target_user_id="u1", is_reversed=False)
    assert [item.id for item in history] == [first.id]
    warnings = await ledger.list_actions(admin, kind="user_warned", limit=1)
    assert [item.id for item in warnings] == [second.id]
    window = await ledger.list_actions(
        admin, created_from=start + timedelta(minutes=1), created_to=start + timedelta(minutes=6)
    )
    assert [item.id for item in window] == [second.id]


@pytest.mark.asyncio
async def test_action_log_is_admin_only_and_validated(moderator, admin, clock) -> None:
    ledger = container.get_action_ledger()
    with pytest.raises(Forbidden) as exc:
        await ledger.list_actions(moderator)
    assert exc.value.detail == "admin_required"

    with pytest.raises(ValidationFailed) as exc:
        await ledger.list_actions(admin, limit=0)
    assert exc.value.field == "limit"
    with pytest.raises(ValidationFailed) as exc:
        await ledger.list_actions(admin, created_from=clock.now, created_to=clock.now - timedelta(days=1))
    assert exc.value.field == "created_from"
    with pytest.raises(ValidationFailed) as exc:
        await ledger.list_actions(admin, kind="user_hugged")
    assert exc.value.field == "action_type"
