"""Append-only moderation action ledger."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence
from uuid import uuid4

from app.infra import rate_limit
from app.moderation.domain.exceptions import (
    AlreadyReversed,
    ConflictError,
    Forbidden,
    InvalidTransition,
    NotFound,
    NotReversed,
    RateLimited,
    ValidationFailed,
)
from app.moderation.domain.notices import action_notice, reversal_notice
from app.moderation.domain.notifications import NotificationSink, notify_best_effort
from app.moderation.domain.rbac import RoleDirectory, StaffCapability, StaffContext, ensure_capability
from app.moderation.domain.restrictions import InMemoryRestrictionRepository, Restriction, RestrictionKind
from app.moderation.domain.reversal_guard import ReversalGuard
from app.moderation.domain.security_events import (
    SecurityEventKind,
    SecurityEventSink,
    Severity,
    record_security_event,
)
from app.moderation.domain.validation import (
    MAX_DURATION_DAYS,
    MAX_NOTES_LENGTH,
    MAX_NOTIFICATION_LENGTH,
    MAX_REASON_LENGTH,
    Clock,
    check_range,
    clean_text,
    parse_enum,
    utcnow,
)
from app.obs import metrics as obs_metrics
from app.obs.logging import get_logger
from app.settings import settings

logger = get_logger("moderation.ledger")

RateLimiter = Callable[..., Awaitable[bool]]

MAX_LOG_PAGE = 200


class ActionKind(str, Enum):
    CONTENT_REMOVED = "content_removed"
    CONTENT_APPROVED = "content_approved"
    USER_WARNED = "user_warned"
    USER_SUSPENDED = "user_suspended"
    USER_BANNED = "user_banned"
    RESTRICTION_APPLIED = "restriction_applied"


class TargetType(str, Enum):
    POST = "post"
    COMMENT = "comment"
    TRACK = "track"
    USER = "user"
    ALBUM = "album"


USER_TARGETED_KINDS = frozenset(
    {ActionKind.USER_SUSPENDED, ActionKind.USER_BANNED, ActionKind.RESTRICTION_APPLIED}
)
CONTENT_KINDS = frozenset({ActionKind.CONTENT_REMOVED, ActionKind.CONTENT_APPROVED})


class StateChangeKind(str, Enum):
    APPLIED = "applied"
    REVERSED = "reversed"
    REAPPLIED = "reapplied"


@dataclass(slots=True, frozen=True)
class StateChange:
    timestamp: datetime
    action: StateChangeKind
    by_user_id: str
    reason: str
    is_self_action: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "by_user_id": self.by_user_id,
            "reason": self.reason,
            "is_self_action": self.is_self_action,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "StateChange":
        if not isinstance(raw, Mapping):
            raise ValidationFailed("metadata.state_changes", "entries must be objects")
        try:
            timestamp = raw["timestamp"]
            if isinstance(timestamp, str):
                timestamp = datetime.fromisoformat(timestamp)
            if not isinstance(timestamp, datetime):
                raise TypeError("timestamp")
            return cls(
                timestamp=timestamp,
                action=StateChangeKind(raw["action"]),
                by_user_id=str(raw["by_user_id"]),
                reason=str(raw.get("reason") or ""),
                is_self_action=bool(raw.get("is_self_action", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationFailed("metadata.state_changes", f"malformed entry ({exc})") from None


_KNOWN_METADATA_KEYS = frozenset(
    {"state_changes", "reversal_reason", "is_self_reversal", "restriction_id", "restriction_type", "reapplied_from"}
)


@dataclass(slots=True, frozen=True)
class ActionMetadata:
    state_changes: tuple[StateChange, ...] = ()
    reversal_reason: str | None = None
    is_self_reversal: bool | None = None
    restriction_id: str | None = None
    restriction_type: str | None = None
    reapplied_from: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def append(self, change: StateChange) -> "ActionMetadata":
        """Return a copy with ``change`` appended, rejecting histories that cannot happen.

        A history opens with ``applied`` (or ``reapplied`` for a re-issued action) and
        may be closed by a single ``reversed``; re-application creates a new entry
        rather than extending a reversed one.
        """
        last = self.state_changes[-1].action if self.state_changes else None
        if last is None:
            allowed = change.action in (StateChangeKind.APPLIED, StateChangeKind.REAPPLIED)
        else:
            allowed = change.action is StateChangeKind.REVERSED and last is not StateChangeKind.REVERSED
        if not allowed:
            raise InvalidTransition(last.value if last else "none", change.action.value)
        return replace(self, state_changes=self.state_changes + (change,))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data["state_changes"] = [change.to_dict() for change in self.state_changes]
        for key in ("reversal_reason", "is_self_reversal", "restriction_id", "restriction_type", "reapplied_from"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "ActionMetadata":
        raw = raw or {}
        changes = raw.get("state_changes") or []
        if not isinstance(changes, list):
            raise ValidationFailed("metadata.state_changes", "must be a list")
        metadata = cls(
            reversal_reason=raw.get("reversal_reason"),
            is_self_reversal=raw.get("is_self_reversal"),
            restriction_id=raw.get("restriction_id"),
            restriction_type=raw.get("restriction_type"),
            reapplied_from=raw.get("reapplied_from"),
            extra={key: value for key, value in raw.items() if key not in _KNOWN_METADATA_KEYS},
        )
        for entry in changes:
            metadata = metadata.append(StateChange.from_dict(entry))
        return metadata


@dataclass(slots=True)
class ModerationAction:
    id: str
    moderator_id: str
    kind: ActionKind
    reason: str
    created_at: datetime
    target_user_id: str | None = None
    target_type: TargetType | None = None
    target_id: str | None = None
    duration_days: int | None = None
    expires_at: datetime | None = None
    related_report_id: str | None = None
    internal_notes: str | None = None
    notification_sent: bool = False
    notification_message: str | None = None
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    metadata: ActionMetadata = field(default_factory=ActionMetadata)

    @property
    def is_reversed(self) -> bool:
        return self.revoked_at is not None

    def reversed_by(
        self,
        moderator_id: str,
        *,
        at: datetime,
        reason: str,
        is_self_reversal: bool,
    ) -> "ModerationAction":
        """Return the reversed copy of this entry; the stored row is not touched."""
        metadata = self.metadata
        if not metadata.state_changes:
            # Rows written before histories were tracked get their implicit first entry
            metadata = metadata.append(
                StateChange(
                    timestamp=self.created_at,
                    action=StateChangeKind.APPLIED,
                    by_user_id=self.moderator_id,
                    reason=self.reason,
                )
            )
        metadata = metadata.append(
            StateChange(
                timestamp=at,
                action=StateChangeKind.REVERSED,
                by_user_id=moderator_id,
                reason=reason,
                is_self_action=is_self_reversal,
            )
        )
        metadata = replace(metadata, reversal_reason=reason, is_self_reversal=is_self_reversal)
        return replace(self, revoked_at=at, revoked_by=moderator_id, metadata=metadata)


@dataclass(slots=True, frozen=True)
class ActionFilters:
    """Audit-log query; ``None`` fields do not constrain the result."""

    moderator_id: str | None = None
    target_user_id: str | None = None
    kind: ActionKind | None = None
    is_reversed: bool | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    def matches(self, action: ModerationAction) -> bool:
        if self.moderator_id is not None and action.moderator_id != self.moderator_id:
            return False
        if self.target_user_id is not None and action.target_user_id != self.target_user_id:
            return False
        if self.kind is not None and action.kind is not self.kind:
            return False
        if self.is_reversed is not None and action.is_reversed != self.is_reversed:
            return False
        if self.created_from is not None and action.created_at < self.created_from:
            return False
        if self.created_to is not None and action.created_at > self.created_to:
            return False
        return True


@dataclass(slots=True)
class ReversalOutcome:
    action: ModerationAction
    lifted: list[Restriction] = field(default_factory=list)


_UNSET: Any = object()


@dataclass(slots=True)
class ActionAmendment:
    """Fields a caller asked to change; anything left as ``_UNSET`` is untouched."""

    internal_notes: Any = _UNSET
    revoked_at: Any = _UNSET
    revoked_by: Any = _UNSET
    reversal_reason: Any = _UNSET
    extra_metadata: Any = _UNSET

    def touches_reversal(self) -> bool:
        return any(value is not _UNSET for value in (self.revoked_at, self.revoked_by, self.reversal_reason))


class ActionRepository(Protocol):
    async def create(self, action: ModerationAction, restriction: Restriction | None) -> ModerationAction:
        """Insert the entry and, when given, its restriction in one transaction."""
        ...

    async def get(self, action_id: str) -> ModerationAction | None:
        ...

    async def reverse(
        self,
        action_id: str,
        *,
        revoked_by: str,
        revoked_at: datetime,
        reason: str,
        is_self_reversal: bool,
    ) -> ReversalOutcome:
        """Lock, verify not yet reversed, write reversal fields, deactivate linked restrictions."""
        ...

    async def update(self, action: ModerationAction, *, actor_id: str | None) -> ModerationAction:
        ...

    async def delete(self, action_id: str, *, actor_id: str | None) -> None:
        ...

    async def list_created_between(self, start: datetime, end: datetime) -> Sequence[ModerationAction]:
        ...

    async def list_actions(self, filters: ActionFilters, *, limit: int) -> Sequence[ModerationAction]:
        """Entries matching ``filters``, newest first."""
        ...


class InMemoryActionRepository(ActionRepository):
    """Ledger storage for development and tests, sharing the restriction store's lock."""

    def __init__(self, restrictions: InMemoryRestrictionRepository, *, guard: ReversalGuard | None = None) -> None:
        self._restrictions = restrictions
        self._guard = guard or ReversalGuard()
        self._items: dict[str, ModerationAction] = {}

    async def create(self, action: ModerationAction, restriction: Restriction | None) -> ModerationAction:
        async with self._restrictions.lock:
            if restriction is not None:
                self._restrictions.insert_locked(restriction)
            self._items[action.id] = replace(action)
            return replace(action)

    async def get(self, action_id: str) -> ModerationAction | None:
        item = self._items.get(action_id)
        return replace(item) if item else None

    async def reverse(
        self,
        action_id: str,
        *,
        revoked_by: str,
        revoked_at: datetime,
        reason: str,
        is_self_reversal: bool,
    ) -> ReversalOutcome:
        async with self._restrictions.lock:
            current = self._items.get(action_id)
            if current is None:
                raise NotFound("action_not_found")
            if current.is_reversed:
                raise AlreadyReversed(action_id, revoked_by=current.revoked_by, revoked_at=current.revoked_at)
            updated = current.reversed_by(revoked_by, at=revoked_at, reason=reason, is_self_reversal=is_self_reversal)
            await self._guard.check_update(current, updated, actor_id=revoked_by)
            lifted: list[Restriction] = []
            for restriction in self._restrictions.active_for_action_locked(action_id):
                deactivated = self._restrictions.deactivate_locked(restriction.id, now=revoked_at)
                if deactivated is not None:
                    lifted.append(deactivated)
            self._items[action_id] = updated
            return ReversalOutcome(action=replace(updated), lifted=lifted)

    async def update(self, action: ModerationAction, *, actor_id: str | None) -> ModerationAction:
        async with self._restrictions.lock:
            current = self._items.get(action.id)
            if current is None:
                raise NotFound("action_not_found")
            await self._guard.check_update(current, action, actor_id=actor_id)
            self._items[action.id] = replace(action)
            return replace(action)

    async def delete(self, action_id: str, *, actor_id: str | None) -> None:
        async with self._restrictions.lock:
            current = self._items.get(action_id)
            if current is None:
                raise NotFound("action_not_found")
            await self._guard.check_delete(current, actor_id=actor_id)
            if self._restrictions.active_for_action_locked(action_id):
                raise ConflictError("action_has_active_restriction")
            del self._items[action_id]

    async def list_created_between(self, start: datetime, end: datetime) -> Sequence[ModerationAction]:
        items = [replace(item) for item in self._items.values() if start <= item.created_at <= end]
        return sorted(items, key=lambda item: item.created_at)

    async def list_actions(self, filters: ActionFilters, *, limit: int) -> Sequence[ModerationAction]:
        items = [replace(item) for item in self._items.values() if filters.matches(item)]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items[:limit]


_RESTRICTION_FOR_KIND = {
    ActionKind.USER_SUSPENDED: RestrictionKind.SUSPENDED,
    ActionKind.USER_BANNED: RestrictionKind.SUSPENDED,
}


class ActionLedger:
    """Records, reverses and re-applies moderation actions."""

    def __init__(
        self,
        repository: ActionRepository,
        *,
        roles: RoleDirectory | None = None,
        notifications: NotificationSink | None = None,
        security_events: SecurityEventSink | None = None,
        report_exists: Callable[[str], Awaitable[bool]] | None = None,
        rate_limiter: RateLimiter | None = rate_limit.allow,
        clock: Clock = utcnow,
        action_limit: int | None = None,
        action_window_seconds: int | None = None,
    ) -> None:
        self._repo = repository
        self._roles = roles
        self._notifications = notifications
        self._security_events = security_events
        self._report_exists = report_exists
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._action_limit = action_limit if action_limit is not None else settings.moderation_action_rate_limit
        self._action_window = (
            action_window_seconds if action_window_seconds is not None else settings.moderation_action_rate_window_seconds
        )

    async def get_action(self, action_id: str) -> ModerationAction:
        action = await self._repo.get(action_id)
        if action is None:
            raise NotFound("action_not_found")
        return action

    async def view_action(self, actor: StaffContext, action_id: str) -> ModerationAction:
        if not actor.is_moderator:
            raise Forbidden("moderator_required")
        return await self.get_action(action_id)

    async def list_actions(
        self,
        actor: StaffContext,
        *,
        moderator_id: str | None = None,
        target_user_id: str | None = None,
        kind: ActionKind | str | None = None,
        is_reversed: bool | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int = 50,
    ) -> Sequence[ModerationAction]:
        """Read the audit log back, newest first."""
        ensure_capability(actor, StaffCapability.VIEW_AUDIT)
        check_range("limit", limit, low=1, high=MAX_LOG_PAGE)
        if created_from is not None and created_to is not None and created_from > created_to:
            raise ValidationFailed("created_from", "must not be after created_to")
        filters = ActionFilters(
            moderator_id=moderator_id,
            target_user_id=target_user_id,
            kind=parse_enum(ActionKind, "action_type", kind) if kind is not None else None,
            is_reversed=is_reversed,
            created_from=created_from,
            created_to=created_to,
        )
        return await self._repo.list_actions(filters, limit=limit)

    async def record_action(
        self,
        actor: StaffContext,
        *,
        kind: ActionKind | str,
        reason: str,
        target_user_id: str | None = None,
        target_type: TargetType | str | None = None,
        target_id: str | None = None,
        duration_days: int | None = None,
        related_report_id: str | None = None,
        internal_notes: str | None = None,
        notification_message: str | None = None,
        restriction_kind: RestrictionKind | str | None = None,
    ) -> ModerationAction:
        ensure_capability(actor, StaffCapability.RECORD_ACTION)
        return await self._record(
            actor,
            kind=kind,
            reason=reason,
            target_user_id=target_user_id,
            target_type=target_type,
            target_id=target_id,
            duration_days=duration_days,
            related_report_id=related_report_id,
            internal_notes=internal_notes,
            notification_message=notification_message,
            restriction_kind=restriction_kind,
            opening=StateChangeKind.APPLIED,
            reapplied_from=None,
        )

    async def reverse_action(self, actor: StaffContext, action_id: str, *, reason: str) -> ReversalOutcome:
        """Reverse a ledger entry and lift whatever restriction it imposed.

        Admins may reverse any entry. A moderator may reverse only an entry they
        recorded themselves (flagged as a self-reversal), never a ban, and never
        one whose target holds the admin role.
        """
        ensure_capability(actor, StaffCapability.REVERSE_ACTION)
        cleaned_reason = clean_text("reason", reason, max_length=MAX_REASON_LENGTH, required=True) or ""
        action = await self.get_action(action_id)
        if action.is_reversed:
            raise AlreadyReversed(action_id, revoked_by=action.revoked_by, revoked_at=action.revoked_at)
        is_self = action.moderator_id == actor.actor_id
        if not actor.is_admin:
            if not is_self:
                raise Forbidden("admin_required", context={"action_id": action_id, "rule": "reverse_others"})
            if action.kind is ActionKind.USER_BANNED:
                raise Forbidden("admin_required", context={"action_id": action_id, "rule": "reverse_ban"})
            if action.target_user_id and self._roles is not None and await self._roles.is_admin(action.target_user_id):
                raise Forbidden("cannot_target_admin", context={"action_id": action_id})

        outcome = await self._repo.reverse(
            action_id,
            revoked_by=actor.actor_id,
            revoked_at=self._clock(),
            reason=cleaned_reason,
            is_self_reversal=is_self,
        )
        obs_metrics.inc_reversal(action.kind.value, self_reversal=is_self)
        for restriction in outcome.lifted:
            obs_metrics.restriction_deactivated(restriction.kind.value)
        logger.info(
            "action_reversed",
            extra={
                "action_id": action_id,
                "action_type": action.kind.value,
                "actor_id": actor.actor_id,
                "is_self_reversal": is_self,
                "lifted": [item.id for item in outcome.lifted],
            },
        )
        if is_self:
            await record_security_event(
                self._security_events,
                SecurityEventKind.SELF_REVERSAL,
                Severity.LOW,
                actor.actor_id,
                {"action_id": action_id, "action_type": action.kind.value, "reason": cleaned_reason},
            )
        title, message = reversal_notice(action.kind.value, reason=cleaned_reason, original_reason=action.reason)
        await notify_best_effort(
            self._notifications,
            action.target_user_id,
            title,
            message,
            {
                "moderation_action": "action_revoked",
                "original_action_type": action.kind.value,
                "action_id": action_id,
                "revoked_by": actor.actor_id,
            },
        )
        return outcome

    async def reapply_action(
        self,
        actor: StaffContext,
        action_id: str,
        *,
        reason: str | None = None,
    ) -> ModerationAction:
        """Issue a fresh entry mirroring a reversed one; the reversed entry is never modified."""
        ensure_capability(actor, StaffCapability.RECORD_ACTION)
        original = await self.get_action(action_id)
        if not original.is_reversed:
            raise NotReversed(context={"action_id": action_id})
        return await self._record(
            actor,
            kind=original.kind,
            reason=reason or original.reason,
            target_user_id=original.target_user_id,
            target_type=original.target_type,
            target_id=original.target_id,
            duration_days=original.duration_days,
            related_report_id=original.related_report_id,
            internal_notes=None,
            notification_message=None,
            restriction_kind=original.metadata.restriction_type
            if original.kind is ActionKind.RESTRICTION_APPLIED
            else None,
            opening=StateChangeKind.REAPPLIED,
            reapplied_from=original.id,
        )

    async def amend_action(
        self,
        actor: StaffContext,
        action_id: str,
        amendment: ActionAmendment,
    ) -> ModerationAction:
        if not actor.is_admin:
            raise Forbidden("admin_required", context={"action_id": action_id, "rule": "amend"})
        current = await self.get_action(action_id)
        if amendment.touches_reversal() and not current.is_reversed:
            raise ValidationFailed("revoked_at", "reversal fields are written by reverse_action only")
        updated = replace(current)
        if amendment.internal_notes is not _UNSET:
            updated.internal_notes = clean_text("internal_notes", amendment.internal_notes, max_length=MAX_NOTES_LENGTH)
        if amendment.revoked_at is not _UNSET:
            updated.revoked_at = amendment.revoked_at
        if amendment.revoked_by is not _UNSET:
            updated.revoked_by = amendment.revoked_by
        metadata = updated.metadata
        if amendment.reversal_reason is not _UNSET:
            metadata = replace(metadata, reversal_reason=amendment.reversal_reason)
        if amendment.extra_metadata is not _UNSET:
            extra = dict(amendment.extra_metadata or {})
            reserved = sorted(set(extra) & _KNOWN_METADATA_KEYS)
            if reserved:
                raise ValidationFailed("metadata", f"reserved keys: {', '.join(reserved)}")
            metadata = replace(metadata, extra=extra)
        updated.metadata = metadata
        return await self._repo.update(updated, actor_id=actor.actor_id)

    async def delete_action(self, actor: StaffContext, action_id: str) -> None:
        if not actor.is_admin:
            raise Forbidden("admin_required", context={"action_id": action_id, "rule": "delete"})
        await self._repo.delete(action_id, actor_id=actor.actor_id)
        logger.info("action_deleted", extra={"action_id": action_id, "actor_id": actor.actor_id})

    async def _record(
        self,
        actor: StaffContext,
        *,
        kind: ActionKind | str,
        reason: str,
        target_user_id: str | None,
        target_type: TargetType | str | None,
        target_id: str | None,
        duration_days: int | None,
        related_report_id: str | None,
        internal_notes: str | None,
        notification_message: str | None,
        restriction_kind: RestrictionKind | str | None,
        opening: StateChangeKind,
        reapplied_from: str | None,
    ) -> ModerationAction:
        action_kind = parse_enum(ActionKind, "action_type", kind)
        if action_kind is ActionKind.USER_BANNED and not actor.is_admin:
            raise Forbidden("admin_required", context={"rule": "ban"})
        cleaned_reason = clean_text("reason", reason, max_length=MAX_REASON_LENGTH, required=True) or ""
        check_range("duration_days", duration_days, low=0, high=MAX_DURATION_DAYS)
        notes = clean_text("internal_notes", internal_notes, max_length=MAX_NOTES_LENGTH)
        message = clean_text("notification_message", notification_message, max_length=MAX_NOTIFICATION_LENGTH)
        parsed_target_type = parse_enum(TargetType, "target_type", target_type) if target_type is not None else None
        target_id = (target_id or "").strip() or None
        target_user_id = (target_user_id or "").strip() or None
        if parsed_target_type is not None and target_id is None:
            raise ValidationFailed("target_id", "required with target_type")
        if action_kind in CONTENT_KINDS and (parsed_target_type is None or target_id is None):
            raise ValidationFailed("target_type", "required for content actions")
        if action_kind in USER_TARGETED_KINDS and target_user_id is None:
            raise ValidationFailed("target_user_id", f"required for {action_kind.value}")

        parsed_restriction: RestrictionKind | None = None
        if action_kind is ActionKind.RESTRICTION_APPLIED:
            if restriction_kind is None:
                raise ValidationFailed("restriction_type", "required for restriction_applied")
            parsed_restriction = parse_enum(RestrictionKind, "restriction_type", restriction_kind)
        elif restriction_kind is not None:
            raise ValidationFailed("restriction_type", "only valid for restriction_applied")
        else:
            parsed_restriction = _RESTRICTION_FOR_KIND.get(action_kind)

        if target_user_id is not None:
            if target_user_id == actor.actor_id:
                raise Forbidden("cannot_target_self")
            if not actor.is_admin and self._roles is not None and await self._roles.is_admin(target_user_id):
                await record_security_event(
                    self._security_events,
                    SecurityEventKind.UNAUTHORIZED_ACTION_ON_ADMIN,
                    Severity.HIGH,
                    actor.actor_id,
                    {"target_user_id": target_user_id, "action_type": action_kind.value},
                )
                raise Forbidden("cannot_target_admin", context={"target_user_id": target_user_id})
        if related_report_id is not None and self._report_exists is not None:
            if not await self._report_exists(related_report_id):
                raise NotFound("report_not_found", context={"related_report_id": related_report_id})
        await self._enforce_rate_limit(actor)

        now = self._clock()
        # A ban is permanent whatever duration was supplied
        effective_days = None if action_kind is ActionKind.USER_BANNED else (duration_days or None)
        expires_at = now + timedelta(days=effective_days) if effective_days else None
        action_id = str(uuid4())
        restriction: Restriction | None = None
        if parsed_restriction is not None and target_user_id is not None:
            restriction = Restriction.new(
                user_id=target_user_id,
                kind=parsed_restriction,
                reason=cleaned_reason,
                applied_by=actor.actor_id,
                now=now,
                duration_days=effective_days,
                related_action_id=action_id,
            )
        metadata = ActionMetadata(
            restriction_id=restriction.id if restriction else None,
            restriction_type=restriction.kind.value if restriction else None,
            reapplied_from=reapplied_from,
        ).append(StateChange(timestamp=now, action=opening, by_user_id=actor.actor_id, reason=cleaned_reason))
        action = ModerationAction(
            id=action_id,
            moderator_id=actor.actor_id,
            kind=action_kind,
            reason=cleaned_reason,
            created_at=now,
            target_user_id=target_user_id,
            target_type=parsed_target_type,
            target_id=target_id,
            duration_days=effective_days,
            expires_at=expires_at,
            related_report_id=related_report_id,
            internal_notes=notes,
            notification_message=message,
            metadata=metadata,
        )
        stored = await self._repo.create(action, restriction)
        obs_metrics.inc_action(action_kind.value)
        if restriction is not None:
            obs_metrics.restriction_activated(restriction.kind.value)
        logger.info(
            "action_recorded",
            extra={
                "action_id": stored.id,
                "action_type": action_kind.value,
                "actor_id": actor.actor_id,
                "target_user_id": target_user_id,
                "restriction_id": restriction.id if restriction else None,
                "opening": opening.value,
            },
        )
        return await self._notify_target(stored)

    async def _notify_target(self, action: ModerationAction) -> ModerationAction:
        if action.target_user_id is None:
            return action
        title, message = action_notice(
            action.kind.value,
            reason=action.reason,
            custom_message=action.notification_message,
            expires_at=action.expires_at,
            restriction_type=action.metadata.restriction_type,
        )
        sent = await notify_best_effort(
            self._notifications,
            action.target_user_id,
            title,
            message,
            {"moderation_action": action.kind.value, "action_id": action.id},
        )
        if not sent:
            return action
        try:
            return await self._repo.update(replace(action, notification_sent=True), actor_id=action.moderator_id)
        except Exception:  # noqa: BLE001 - the action itself is committed; the flag is advisory
            logger.warning("notification_flag_update_failed", extra={"action_id": action.id}, exc_info=True)
            return action

    async def _enforce_rate_limit(self, actor: StaffContext) -> None:
        if self._rate_limiter is None:
            return
        allowed = await self._rate_limiter(
            "moderation_action",
            actor.actor_id,
            limit=self._action_limit,
            window_seconds=self._action_window,
        )
        if not allowed:
            raise RateLimited(
                "action_rate_limited",
                context={"limit": self._action_limit, "window_seconds": self._action_window},
            )
