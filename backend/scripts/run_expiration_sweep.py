"""Run a single expiration sweep against the configured database and print the log records."""

import asyncio
import sys

from app.infra.postgres import close_pool, get_pool
from app.moderation import configure_postgres
from app.moderation.domain import container
from app.moderation.domain.expiration import SweepStatus
from app.moderation.jobs import expire_restrictions
from app.obs import logging as obs_logging


async def main() -> int:
    obs_logging.configure_logging()
    pool = await get_pool()
    try:
        configure_postgres(pool)
        runs = await expire_restrictions.run(container.get_expiration_sweeper())
    finally:
        await close_pool()

    for run in runs:
        print(
            f"{run.job_type}: status={run.status} expired={run.expired_count} "
            f"failed={run.failed_count} duration_ms={run.duration_ms}"
        )
        if run.error_message:
            print(f"  error: {run.error_message}")
    return 1 if any(run.status == SweepStatus.FAILED for run in runs) else 0


if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    sys.exit(asyncio.run(main()))
