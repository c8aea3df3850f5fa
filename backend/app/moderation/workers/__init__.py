"""Moderation worker exports."""

from .runner import SweepWorker, spawn_workers

__all__ = [
	"SweepWorker",
	"spawn_workers",
]
