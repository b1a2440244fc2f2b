from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from adspulse.domain.errors import ApiError, error_payload, normalize_api_error
from adspulse.observability import incr_metric, log_event


REQUEST_ID_HEADER = "X-Request-ID"
RESPONSE_TIME_HEADER = "X-Response-Time-Ms"


def resolve_request_id(request: Request) -> str:
    existing = getattr(request.state, "request_id", None)
    if existing:
        return existing
    request_id = (
        request.headers.get(REQUEST_ID_HEADER)
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    started = getattr(request.state, "started_at", None)
    duration_ms = 0 if started is None else max(0, int((time.perf_counter() - started) * 1000))
    return {
        "durationMs": duration_ms,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _envelope_response(request: Request, body: dict[str, Any], status_code: int) -> JSONResponse:
    response = JSONResponse(content=jsonable_encoder(body), status_code=status_code)
    response.headers[REQUEST_ID_HEADER] = body["requestId"]
    response.headers[RESPONSE_TIME_HEADER] = str(body["meta"]["durationMs"])
    return response


def success_response(request: Request, data: Any, status_code: int = 200) -> JSONResponse:
    body = {
        "ok": True,
        "requestId": resolve_request_id(request),
        "data": jsonable_encoder(data, by_alias=True),
        "meta": _meta(request),
    }
    return _envelope_response(request, body, status_code)


def error_response(request: Request, error: ApiError) -> JSONResponse:
    body = {
        "ok": False,
        "requestId": resolve_request_id(request),
        "error": error_payload(error),
        "meta": _meta(request),
    }
    response = _envelope_response(request, body, error.status_code)
    if error.headers:
        for key, value in error.headers.items():
            response.headers[key] = value
    return response


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error = normalize_api_error(exc)
    incr_metric("api.errors", code=error.code, status=error.status_code)
    log_event(
        "api_error",
        level=logging.ERROR if error.status_code >= 500 else logging.INFO,
        request_id=resolve_request_id(request),
        path=request.url.path,
        method=request.method,
        status_code=error.status_code,
        code=error.code,
        message=error.message,
        details=error.details,
    )
    return error_response(request, error)


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ApiError(
        status_code=400,
        code="VALIDATION_ERROR",
        message="Request validation failed.",
        details=jsonable_encoder(exc.errors()),
    )
    incr_metric("api.errors", code=error.code, status=error.status_code)
    log_event(
        "api_validation_failed",
        request_id=resolve_request_id(request),
        path=request.url.path,
        method=request.method,
        error_count=len(exc.errors()),
    )
    return error_response(request, error)


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    error = normalize_api_error(exc)
    incr_metric("api.errors", code=error.code, status=error.status_code)
    log_event(
        "api_unhandled_exception",
        level=logging.ERROR,
        request_id=resolve_request_id(request),
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return error_response(request, error)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(Exception, _handle_unexpected_error)
