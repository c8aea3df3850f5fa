"""Deactivate restrictions and suspensions whose expiry has passed."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from app.moderation.domain.expiration import ExpirationSweeper, SweepRun


async def run(sweeper: ExpirationSweeper, *, now: datetime | None = None) -> Sequence[SweepRun]:
    """Run one sweep and return the per-job log records."""

    return await sweeper.run(now)
