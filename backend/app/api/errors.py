"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.request_id import get_request_id
from app.moderation.api._errors import to_http_error
from app.moderation.domain.exceptions import ModerationError


def _body(detail, rid: str) -> dict:
    # Structured details from the moderation routers are merged into the top level
    if isinstance(detail, dict) and "detail" in detail:
        return {**detail, "request_id": rid}
    return {"detail": detail, "request_id": rid}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        rid = get_request_id(request)
        headers = getattr(exc, "headers", None)
        return JSONResponse(status_code=exc.status_code, content=_body(exc.detail, rid), headers=headers)

    @app.exception_handler(ModerationError)
    async def moderation_exc_handler(request: Request, exc: ModerationError):  # type: ignore[override]
        http_exc = to_http_error(exc)
        rid = get_request_id(request)
        return JSONResponse(
            status_code=http_exc.status_code,
            content=_body(http_exc.detail, rid),
            headers=http_exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        rid = get_request_id(request)
        payload = {"detail": "validation_error", "errors": jsonable_encoder(exc.errors()), "request_id": rid}
        return JSONResponse(status_code=422, content=payload)
