"""Moderation package integration helpers exposed to the application."""

from app.moderation.api import router
from app.moderation.domain.container import configure, configure_postgres
from app.moderation.workers.runner import spawn_workers

__all__ = ["router", "configure", "configure_postgres", "spawn_workers"]
