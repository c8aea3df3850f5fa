"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api import ops
from app.api.errors import install_error_handlers
from app.infra import postgres
from app.moderation import configure_postgres as configure_moderation
from app.moderation import router as moderation_router
from app.moderation import spawn_workers as spawn_moderation_workers
from app.obs import init as obs_init
from app.obs.logging import get_logger
from app.settings import settings

logger = get_logger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = await postgres.init_pool()
	configure_moderation(pool)
	worker_tasks: list[asyncio.Task] = []
	if settings.moderation_sweeper_enabled:
		worker_tasks.extend(spawn_moderation_workers())
		logger.info(
			"sweeper_started",
			extra={"interval_seconds": settings.moderation_sweep_interval_seconds},
		)
	try:
		yield
	finally:
		for task in worker_tasks:
			task.cancel()
		if worker_tasks:
			await asyncio.gather(*worker_tasks, return_exceptions=True)
		await postgres.close_pool()


app = FastAPI(title="Modledger Moderation Engine", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

app.include_router(ops.router, tags=["ops"])
app.include_router(moderation_router, tags=["moderation"])
