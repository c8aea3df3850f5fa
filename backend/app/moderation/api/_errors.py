"""Translate moderation domain errors into HTTP errors."""

from __future__ import annotations

from fastapi import HTTPException

from app.moderation.domain.exceptions import ModerationError, RateLimited
from app.obs import metrics as obs_metrics


def to_http_error(exc: ModerationError) -> HTTPException:
    obs_metrics.inc_rejection(exc.detail)
    payload = exc.to_payload()
    headers = None
    if isinstance(exc, RateLimited) and exc.context.get("window_seconds"):
        headers = {"Retry-After": str(exc.context["window_seconds"])}
    return HTTPException(status_code=exc.status_code, detail=payload, headers=headers)
