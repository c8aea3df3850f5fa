"""Role to capability mapping for moderation staff."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Protocol

from app.infra.auth import AuthenticatedUser
from app.moderation.domain.exceptions import Forbidden

STAFF_MODERATOR_SCOPE = "staff.moderator"
STAFF_ADMIN_SCOPE = "staff.admin"
ADMIN_ROLES = frozenset({"admin", STAFF_ADMIN_SCOPE})
MODERATOR_ROLES = frozenset({"moderator", STAFF_MODERATOR_SCOPE})


class StaffCapability(str, Enum):
    RECORD_ACTION = "record_action"
    REVERSE_ACTION = "reverse_action"
    VIEW_AUDIT = "view_audit"
    RUN_SWEEP = "run_sweep"
    FLAG_CONTENT = "flag_content"
    REVIEW_REPORTS = "review_reports"


_MODERATOR_CAPABILITIES = frozenset(
    {
        StaffCapability.RECORD_ACTION,
        # Moderators may only reverse their own ordinary actions; ActionLedger narrows this further
        StaffCapability.REVERSE_ACTION,
        StaffCapability.FLAG_CONTENT,
        StaffCapability.REVIEW_REPORTS,
    }
)
_ADMIN_CAPABILITIES = frozenset(StaffCapability)


@dataclass(slots=True, frozen=True)
class StaffContext:
    """Resolved caller identity plus the capabilities its roles grant."""

    actor_id: str
    roles: tuple[str, ...] = ()

    @property
    def is_admin(self) -> bool:
        return any(role in ADMIN_ROLES for role in self.roles)

    @property
    def is_moderator(self) -> bool:
        return self.is_admin or any(role in MODERATOR_ROLES for role in self.roles)

    @property
    def capabilities(self) -> frozenset[StaffCapability]:
        if self.is_admin:
            return _ADMIN_CAPABILITIES
        if self.is_moderator:
            return _MODERATOR_CAPABILITIES
        return frozenset()

    def can(self, capability: StaffCapability) -> bool:
        return capability in self.capabilities


def resolve_staff_context(user: AuthenticatedUser) -> StaffContext:
    return StaffContext(actor_id=user.id, roles=tuple(user.roles))


def ensure_capability(context: StaffContext, capability: StaffCapability) -> None:
    if not context.can(capability):
        required = "admin_required" if capability in _ADMIN_CAPABILITIES - _MODERATOR_CAPABILITIES else "moderator_required"
        raise Forbidden(required, context={"capability": capability.value})


class RoleDirectory(Protocol):
    """Oracle answering whether a user id holds a privileged role."""

    async def is_admin(self, user_id: str) -> bool:
        ...

    async def is_moderator(self, user_id: str) -> bool:
        ...


class InMemoryRoleDirectory(RoleDirectory):
    def __init__(self, *, admins: Iterable[str] = (), moderators: Iterable[str] = ()) -> None:
        self.admins: set[str] = set(admins)
        self.moderators: set[str] = set(moderators)

    async def is_admin(self, user_id: str) -> bool:
        return user_id in self.admins

    async def is_moderator(self, user_id: str) -> bool:
        return user_id in self.admins or user_id in self.moderators
