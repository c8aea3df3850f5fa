"""Restriction store and capability checker."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Protocol, Sequence
from uuid import uuid4

from app.moderation.domain.exceptions import AlreadyRestricted, Forbidden, NotFound, RestrictionInactive
from app.moderation.domain.rbac import RoleDirectory, StaffCapability, StaffContext, ensure_capability
from app.moderation.domain.validation import (
    MAX_DURATION_DAYS,
    MAX_REASON_LENGTH,
    Clock,
    check_range,
    clean_text,
    parse_enum,
    utcnow,
)
from app.obs import metrics as obs_metrics
from app.obs.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - type-only imports
    from app.moderation.domain.actions import ActionLedger

logger = get_logger("moderation.restrictions")


class RestrictionKind(str, Enum):
    POSTING_DISABLED = "posting_disabled"
    COMMENTING_DISABLED = "commenting_disabled"
    UPLOAD_DISABLED = "upload_disabled"
    SUSPENDED = "suspended"


class Capability(str, Enum):
    POST = "post"
    COMMENT = "comment"
    UPLOAD = "upload"


CAPABILITY_RESTRICTION = {
    Capability.POST: RestrictionKind.POSTING_DISABLED,
    Capability.COMMENT: RestrictionKind.COMMENTING_DISABLED,
    Capability.UPLOAD: RestrictionKind.UPLOAD_DISABLED,
}


def blocking_kinds(capability: Capability) -> tuple[RestrictionKind, RestrictionKind]:
    """Suspension blocks every capability on top of the capability-specific kind."""
    return (CAPABILITY_RESTRICTION[capability], RestrictionKind.SUSPENDED)


@dataclass(slots=True)
class Restriction:
    id: str
    user_id: str
    kind: RestrictionKind
    reason: str
    applied_by: str
    created_at: datetime
    expires_at: datetime | None = None
    is_active: bool = True
    related_action_id: str | None = None
    updated_at: datetime | None = None

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def in_force(self, now: datetime) -> bool:
        """Active and not yet past expiry; expired rows block nothing even before the sweep."""
        return self.is_active and (self.expires_at is None or self.expires_at > now)

    @classmethod
    def new(
        cls,
        *,
        user_id: str,
        kind: RestrictionKind,
        reason: str,
        applied_by: str,
        now: datetime,
        duration_days: int | None = None,
        related_action_id: str | None = None,
    ) -> "Restriction":
        expires_at = now + timedelta(days=duration_days) if duration_days else None
        return cls(
            id=str(uuid4()),
            user_id=user_id,
            kind=kind,
            reason=reason,
            applied_by=applied_by,
            created_at=now,
            expires_at=expires_at,
            related_action_id=related_action_id,
            updated_at=now,
        )


@dataclass(slots=True)
class SuspensionShadow:
    """Denormalised suspension fields on the user profile.

    ``suspended_until`` is NULL for a permanent suspension; the reason being set is
    what marks the user as suspended.
    """

    user_id: str
    suspended_until: datetime | None = None
    suspension_reason: str | None = None

    def is_suspended(self, now: datetime) -> bool:
        if self.suspension_reason is None:
            return False
        return self.suspended_until is None or self.suspended_until > now


@dataclass(slots=True)
class SuspensionStatus:
    user_id: str
    is_suspended: bool
    suspended_until: datetime | None
    suspension_reason: str | None
    is_permanent: bool
    days_remaining: int | None


@dataclass(slots=True)
class CapabilityDecision:
    capability: Capability
    allowed: bool
    blocked_by: RestrictionKind | None = None
    until: datetime | None = None
    reason: str | None = None

    def describe(self) -> str:
        if self.allowed:
            return f"{self.capability.value} allowed"
        until = f"until {self.until.isoformat()}" if self.until else "permanently"
        return f"{self.capability.value} blocked by {self.blocked_by.value if self.blocked_by else 'restriction'} {until}"


class RestrictionRepository(Protocol):
    async def create(self, restriction: Restriction) -> Restriction:
        """Insert atomically; raise AlreadyRestricted when (user, kind) already has an active row."""
        ...

    async def get(self, restriction_id: str) -> Restriction | None:
        ...

    async def list_active(self, user_id: str, *, now: datetime) -> Sequence[Restriction]:
        ...

    async def list_all(self, user_id: str) -> Sequence[Restriction]:
        ...

    async def find_blocking(
        self,
        user_id: str,
        kinds: Iterable[RestrictionKind],
        *,
        now: datetime,
    ) -> Restriction | None:
        ...

    async def deactivate(self, restriction_id: str, *, now: datetime) -> Restriction | None:
        """Flip an active row inactive and resync the suspension shadow; None if already inactive."""
        ...

    async def list_expired(
        self,
        *,
        now: datetime,
        kinds: Iterable[RestrictionKind],
        limit: int,
    ) -> Sequence[Restriction]:
        ...

    async def expire(self, restriction_id: str, *, now: datetime) -> bool:
        """Deactivate one row if it is still active and past expiry, in its own transaction."""
        ...

    async def get_shadow(self, user_id: str) -> SuspensionShadow | None:
        ...


class InMemoryRestrictionRepository(RestrictionRepository):
    """Repository for development and tests.

    ``lock`` serialises every mutation so the uniqueness invariant holds under
    concurrent callers; the in-memory action ledger shares it for multi-row writes.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._items: dict[str, Restriction] = {}
        self._profiles: dict[str, SuspensionShadow] = {}

    async def create(self, restriction: Restriction) -> Restriction:
        async with self.lock:
            return self.insert_locked(restriction)

    async def get(self, restriction_id: str) -> Restriction | None:
        item = self._items.get(restriction_id)
        return replace(item) if item else None

    async def list_active(self, user_id: str, *, now: datetime) -> Sequence[Restriction]:
        items = [replace(item) for item in self._items.values() if item.user_id == user_id and item.in_force(now)]
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    async def list_all(self, user_id: str) -> Sequence[Restriction]:
        items = [replace(item) for item in self._items.values() if item.user_id == user_id]
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    async def find_blocking(
        self,
        user_id: str,
        kinds: Iterable[RestrictionKind],
        *,
        now: datetime,
    ) -> Restriction | None:
        wanted = set(kinds)
        matches = [
            item for item in self._items.values() if item.user_id == user_id and item.kind in wanted and item.in_force(now)
        ]
        if not matches:
            return None
        # Suspension first so the caller reports the broadest block
        matches.sort(key=lambda item: (item.kind is not RestrictionKind.SUSPENDED, item.created_at))
        return replace(matches[0])

    async def deactivate(self, restriction_id: str, *, now: datetime) -> Restriction | None:
        async with self.lock:
            return self.deactivate_locked(restriction_id, now=now)

    async def list_expired(
        self,
        *,
        now: datetime,
        kinds: Iterable[RestrictionKind],
        limit: int,
    ) -> Sequence[Restriction]:
        wanted = set(kinds)
        items = [
            replace(item)
            for item in self._items.values()
            if item.is_active and item.kind in wanted and item.expires_at is not None and item.expires_at <= now
        ]
        items.sort(key=lambda item: item.expires_at)  # type: ignore[arg-type, return-value]
        return items[:limit]

    async def expire(self, restriction_id: str, *, now: datetime) -> bool:
        async with self.lock:
            item = self._items.get(restriction_id)
            if item is None or not item.is_active or item.expires_at is None or item.expires_at > now:
                return False
            return self.deactivate_locked(restriction_id, now=now) is not None

    async def get_shadow(self, user_id: str) -> SuspensionShadow | None:
        shadow = self._profiles.get(user_id)
        return replace(shadow) if shadow else None

    # Helpers below expect ``lock`` to be held by the caller

    def insert_locked(self, restriction: Restriction) -> Restriction:
        for item in list(self._items.values()):
            if item.user_id != restriction.user_id or item.kind is not restriction.kind or not item.is_active:
                continue
            if not item.in_force(restriction.created_at):
                # Past expiry but not swept yet: retire it the way the sweeper would
                self.deactivate_locked(item.id, now=restriction.created_at)
                continue
            raise AlreadyRestricted(
                restriction.user_id,
                restriction.kind.value,
                existing_id=item.id,
                expires_at=item.expires_at,
            )
        stored = replace(restriction, is_active=True)
        self._items[stored.id] = stored
        if stored.kind is RestrictionKind.SUSPENDED:
            self.sync_shadow_locked(stored.user_id)
        return replace(stored)

    def deactivate_locked(self, restriction_id: str, *, now: datetime) -> Restriction | None:
        item = self._items.get(restriction_id)
        if item is None or not item.is_active:
            return None
        item.is_active = False
        item.updated_at = now
        if item.kind is RestrictionKind.SUSPENDED:
            self.sync_shadow_locked(item.user_id)
        return replace(item)

    def active_for_action_locked(self, action_id: str) -> list[Restriction]:
        return [item for item in self._items.values() if item.related_action_id == action_id and item.is_active]

    def sync_shadow_locked(self, user_id: str) -> None:
        active = next(
            (
                item
                for item in self._items.values()
                if item.user_id == user_id and item.kind is RestrictionKind.SUSPENDED and item.is_active
            ),
            None,
        )
        shadow = self._profiles.setdefault(user_id, SuspensionShadow(user_id=user_id))
        shadow.suspended_until = active.expires_at if active else None
        shadow.suspension_reason = active.reason if active else None


class RestrictionService:
    """Applies, lifts and answers questions about user restrictions."""

    def __init__(
        self,
        repository: RestrictionRepository,
        *,
        ledger: "ActionLedger | None" = None,
        roles: RoleDirectory | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repo = repository
        self._ledger = ledger
        self._roles = roles
        self._clock = clock

    def bind_ledger(self, ledger: "ActionLedger") -> None:
        self._ledger = ledger

    async def apply_restriction(
        self,
        actor: StaffContext,
        *,
        user_id: str,
        kind: RestrictionKind | str,
        reason: str,
        duration_days: int | None = None,
        related_action_id: str | None = None,
    ) -> Restriction:
        ensure_capability(actor, StaffCapability.RECORD_ACTION)
        restriction_kind = parse_enum(RestrictionKind, "restriction_type", kind)
        cleaned_reason = clean_text("reason", reason, max_length=MAX_REASON_LENGTH, required=True)
        check_range("duration_days", duration_days, low=0, high=MAX_DURATION_DAYS)
        if related_action_id is None:
            if self._ledger is None:
                raise RuntimeError("restriction service has no action ledger bound")
            # Standalone restrictions are still audited as a ledger entry
            action = await self._ledger.record_action(
                actor,
                kind="restriction_applied",
                target_user_id=user_id,
                restriction_kind=restriction_kind,
                reason=cleaned_reason or "",
                duration_days=duration_days,
            )
            restriction_id = action.metadata.restriction_id
            stored = await self._repo.get(restriction_id) if restriction_id else None
            if stored is None:  # pragma: no cover - record_action always links the row
                raise NotFound("restriction_not_found")
            return stored

        if self._ledger is None:
            raise RuntimeError("restriction service has no action ledger bound")
        action = await self._ledger.get_action(related_action_id)
        if action.is_reversed:
            raise RestrictionInactive("action_reversed", context={"action_id": related_action_id})
        await self._ensure_target_allowed(actor, user_id)
        restriction = Restriction.new(
            user_id=user_id,
            kind=restriction_kind,
            reason=cleaned_reason or "",
            applied_by=actor.actor_id,
            now=self._clock(),
            duration_days=duration_days,
            related_action_id=related_action_id,
        )
        stored = await self._repo.create(restriction)
        obs_metrics.restriction_activated(stored.kind.value)
        logger.info(
            "restriction_applied",
            extra={"restriction_id": stored.id, "target_user_id": user_id, "kind": stored.kind.value},
        )
        return stored

    async def lift_restriction(self, actor: StaffContext, restriction_id: str, *, reason: str) -> Restriction:
        """Deactivate an active restriction ahead of its expiry.

        A restriction linked to a ledger entry is lifted by reversing that entry so
        the audit trail records who lifted it and why.
        """
        ensure_capability(actor, StaffCapability.RECORD_ACTION)
        cleaned_reason = clean_text("reason", reason, max_length=MAX_REASON_LENGTH, required=True)
        restriction = await self._repo.get(restriction_id)
        if restriction is None:
            raise NotFound("restriction_not_found")
        if restriction.user_id == actor.actor_id:
            raise Forbidden("cannot_lift_own_restriction")
        if not restriction.is_active:
            raise RestrictionInactive(context={"restriction_id": restriction_id})
        if restriction.related_action_id and self._ledger is not None:
            action = await self._ledger.get_action(restriction.related_action_id)
            if not action.is_reversed:
                await self._ledger.reverse_action(actor, action.id, reason=cleaned_reason or "")
                lifted = await self._repo.get(restriction_id)
                if lifted is None:
                    raise NotFound("restriction_not_found")
                return lifted
        lifted = await self._repo.deactivate(restriction_id, now=self._clock())
        if lifted is None:
            raise RestrictionInactive(context={"restriction_id": restriction_id})
        obs_metrics.restriction_deactivated(lifted.kind.value)
        logger.info(
            "restriction_lifted",
            extra={"restriction_id": restriction_id, "actor_id": actor.actor_id, "kind": lifted.kind.value},
        )
        return lifted

    async def check_capability(self, user_id: str, capability: Capability | str) -> CapabilityDecision:
        cap = parse_enum(Capability, "capability", capability)
        blocking = await self._repo.find_blocking(user_id, blocking_kinds(cap), now=self._clock())
        decision = CapabilityDecision(capability=cap, allowed=blocking is None)
        if blocking is not None:
            decision.blocked_by = blocking.kind
            decision.until = blocking.expires_at
            decision.reason = blocking.reason
        obs_metrics.inc_capability_check(cap.value, allowed=decision.allowed)
        return decision

    async def can_perform(self, user_id: str, capability: Capability | str) -> bool:
        return (await self.check_capability(user_id, capability)).allowed

    async def list_active_restrictions(self, user_id: str) -> Sequence[Restriction]:
        return await self._repo.list_active(user_id, now=self._clock())

    async def list_history(self, user_id: str) -> Sequence[Restriction]:
        return await self._repo.list_all(user_id)

    async def get(self, restriction_id: str) -> Restriction:
        restriction = await self._repo.get(restriction_id)
        if restriction is None:
            raise NotFound("restriction_not_found")
        return restriction

    async def get_suspension_status(self, user_id: str) -> SuspensionStatus:
        now = self._clock()
        shadow = await self._repo.get_shadow(user_id) or SuspensionShadow(user_id=user_id)
        suspended = shadow.is_suspended(now)
        days_remaining: int | None = None
        if suspended and shadow.suspended_until is not None:
            remaining = shadow.suspended_until - now
            days_remaining = max(0, remaining.days + (1 if remaining.seconds or remaining.microseconds else 0))
        return SuspensionStatus(
            user_id=user_id,
            is_suspended=suspended,
            suspended_until=shadow.suspended_until if suspended else None,
            suspension_reason=shadow.suspension_reason if suspended else None,
            is_permanent=suspended and shadow.suspended_until is None,
            days_remaining=days_remaining,
        )

    async def _ensure_target_allowed(self, actor: StaffContext, user_id: str) -> None:
        if actor.is_admin or self._roles is None:
            return
        if await self._roles.is_admin(user_id):
            raise Forbidden("cannot_target_admin")
