"""Fire-and-forget notification sink used by the ledger and the sweeper."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from app.obs import metrics as obs_metrics
from app.obs.logging import get_logger

logger = get_logger("moderation.notifications")


@dataclass(slots=True)
class Notification:
    user_id: str
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationSink(Protocol):
    async def notify(self, user_id: str, title: str, message: str, metadata: Mapping[str, Any]) -> None:
        ...


class InMemoryNotificationSink(NotificationSink):
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def notify(self, user_id: str, title: str, message: str, metadata: Mapping[str, Any]) -> None:
        self.sent.append(Notification(user_id=user_id, title=title, message=message, metadata=dict(metadata)))

    def for_user(self, user_id: str) -> list[Notification]:
        return [item for item in self.sent if item.user_id == user_id]


class LoggingNotificationSink(NotificationSink):
    """Sink for deployments where delivery lives elsewhere; records intent only."""

    async def notify(self, user_id: str, title: str, message: str, metadata: Mapping[str, Any]) -> None:
        logger.info("notification_emitted", extra={"recipient_id": user_id, "title": title, "meta": dict(metadata)})


async def notify_best_effort(
    sink: NotificationSink | None,
    user_id: str | None,
    title: str,
    message: str,
    metadata: Mapping[str, Any],
) -> bool:
    """Deliver a notification without ever failing the calling operation."""
    if sink is None or not user_id:
        return False
    try:
        await sink.notify(user_id, title, message, metadata)
    except Exception:  # noqa: BLE001 - notification failures must not fail the originating operation
        obs_metrics.inc_notification("failed")
        logger.warning("notification_failed", extra={"recipient_id": user_id, "title": title}, exc_info=True)
        return False
    obs_metrics.inc_notification("sent")
    return True
