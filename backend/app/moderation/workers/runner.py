"""Utilities for wiring moderation workers into an event loop."""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from app.moderation.domain.container import get_expiration_sweeper
from app.moderation.jobs import expire_restrictions
from app.obs.logging import get_logger
from app.settings import settings

logger = get_logger("jobs.sweeper")


class SweepWorker:
    """Adapter giving the expiration job the worker ``run_once`` shape."""

    async def run_once(self) -> None:
        await expire_restrictions.run(get_expiration_sweeper())


async def _run_forever(worker, delay: float) -> None:
    while True:
        try:
            await worker.run_once()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - keep the schedule alive; the next tick retries
            logger.exception("sweep_tick_failed")
        await asyncio.sleep(delay)


def spawn_workers(
    *,
    interval: Optional[float] = None,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> Iterable[asyncio.Task]:
    """Create the periodic expiration sweep task."""

    event_loop = loop or asyncio.get_event_loop()
    delay = interval if interval is not None else settings.moderation_sweep_interval_seconds
    return [event_loop.create_task(_run_forever(SweepWorker(), delay), name="moderation-expiration-sweeper")]
