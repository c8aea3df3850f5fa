"""Read-only reversal statistics over the action ledger."""

from __future__ import annotations

import statistics
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Iterable

from app.moderation.domain.actions import ActionRepository, ModerationAction
from app.moderation.domain.exceptions import ValidationFailed
from app.moderation.domain.rbac import StaffCapability, StaffContext, ensure_capability


@dataclass(slots=True)
class ModeratorReversalStats:
    moderator_id: str
    total_actions: int
    total_reversals: int
    reversal_rate: float
    average_time_to_reversal_hours: float | None


@dataclass(slots=True)
class ActionTypeReversalStats:
    action_type: str
    total_actions: int
    total_reversals: int
    reversal_rate: float


@dataclass(slots=True)
class TimeToReversal:
    total_reversals: int = 0
    avg: float = 0.0
    median: float = 0.0
    min: float = 0.0
    max: float = 0.0


@dataclass(slots=True)
class ReversalMetrics:
    start: datetime
    end: datetime
    total_actions: int
    total_reversals: int
    overall_rate: float
    per_moderator: list[ModeratorReversalStats] = field(default_factory=list)
    time_to_reversal: TimeToReversal = field(default_factory=TimeToReversal)
    by_action_type: list[ActionTypeReversalStats] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _rate(reversals: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(reversals / total * 100, 2)


def _hours(action: ModerationAction) -> float:
    assert action.revoked_at is not None
    return (action.revoked_at - action.created_at).total_seconds() / 3600


def compute_reversal_metrics(actions: Iterable[ModerationAction], *, start: datetime, end: datetime) -> ReversalMetrics:
    """Aggregate ``actions`` created within ``[start, end]``; rows outside the window are ignored."""
    if start > end:
        raise ValidationFailed("start", "must not be after end")
    window = [action for action in actions if start <= action.created_at <= end]
    reversed_rows = [action for action in window if action.is_reversed]

    by_moderator: dict[str, list[ModerationAction]] = defaultdict(list)
    by_kind: dict[str, list[ModerationAction]] = defaultdict(list)
    for action in window:
        by_moderator[action.moderator_id].append(action)
        by_kind[action.kind.value].append(action)

    per_moderator = []
    for moderator_id, rows in by_moderator.items():
        hours = [_hours(row) for row in rows if row.is_reversed]
        per_moderator.append(
            ModeratorReversalStats(
                moderator_id=moderator_id,
                total_actions=len(rows),
                total_reversals=len(hours),
                reversal_rate=_rate(len(hours), len(rows)),
                average_time_to_reversal_hours=round(statistics.fmean(hours), 2) if hours else None,
            )
        )
    per_moderator.sort(key=lambda item: (-item.reversal_rate, item.moderator_id))

    by_action_type = []
    for kind, rows in by_kind.items():
        reversals = sum(1 for row in rows if row.is_reversed)
        by_action_type.append(
            ActionTypeReversalStats(
                action_type=kind,
                total_actions=len(rows),
                total_reversals=reversals,
                reversal_rate=_rate(reversals, len(rows)),
            )
        )
    by_action_type.sort(key=lambda item: (-item.reversal_rate, item.action_type))

    timing = TimeToReversal()
    if reversed_rows:
        hours = [_hours(row) for row in reversed_rows]
        timing = TimeToReversal(
            total_reversals=len(hours),
            avg=round(statistics.fmean(hours), 2),
            median=round(statistics.median(hours), 2),
            min=round(min(hours), 2),
            max=round(max(hours), 2),
        )

    return ReversalMetrics(
        start=start,
        end=end,
        total_actions=len(window),
        total_reversals=len(reversed_rows),
        overall_rate=_rate(len(reversed_rows), len(window)),
        per_moderator=per_moderator,
        time_to_reversal=timing,
        by_action_type=by_action_type,
    )


class ReversalMetricsService:
    def __init__(self, actions: ActionRepository) -> None:
        self._actions = actions

    async def get_reversal_metrics(self, actor: StaffContext, *, start: datetime, end: datetime) -> ReversalMetrics:
        ensure_capability(actor, StaffCapability.VIEW_AUDIT)
        if start > end:
            raise ValidationFailed("start", "must not be after end")
        rows = await self._actions.list_created_between(start, end)
        return compute_reversal_metrics(rows, start=start, end=end)
