from __future__ import annotations

import logging
import math
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from tollgate.core.errors import RateLimitExceeded


logger = logging.getLogger(__name__)

API_VERSION = "v1"
RATE_LIMITED_CODE = "AI_RATE_LIMITED"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class RateLimitErrorBody(BaseModel):
    # Flat denial fields so clients can schedule a retry without parsing the message.
    code: str = RATE_LIMITED_CODE
    message: str
    kind: str
    operation: str
    reset_at_ms: int
    retry_after_ms: int
    cost_remaining: float | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorBody
    meta: ResponseMeta


class RateLimitEnvelope(BaseModel):
    error: RateLimitErrorBody
    meta: ResponseMeta


_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    429: RATE_LIMITED_CODE,
    500: "INTERNAL_ERROR",
}


def is_versioned(request: Request) -> bool:
    # Client routes live under /v1; provider webhooks and ops keep FastAPI's plain bodies.
    return request.url.path.startswith(f"/{API_VERSION}")


def _meta(request: Request) -> dict[str, Any]:
    request_id = getattr(request.state, "request_id", None) or str(uuid4())
    return ResponseMeta(request_id=request_id).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    if not is_versioned(request):
        return data
    return {"data": data, "meta": _meta(request)}


def _error(request: Request, status_code: int, body: BaseModel, headers: dict[str, str] | None = None) -> JSONResponse:
    content = {"error": body.model_dump(exclude_none=True), "meta": _meta(request)}
    return JSONResponse(content=content, status_code=status_code, headers=headers)


def _split_detail(detail: Any, status_code: int) -> ErrorBody:
    code = _STATUS_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        extra = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return ErrorBody(
            code=str(detail.get("code") or code),
            message=str(detail.get("message") or "Request failed"),
            details=extra or None,
        )
    return ErrorBody(code=code, message=detail if isinstance(detail, str) else "Request failed")


def rate_limit_headers(exc: RateLimitExceeded) -> dict[str, str]:
    # Whole seconds, rounded up, so clients never retry early.
    retry_after_s = max(1, math.ceil(exc.retry_after_ms / 1000))
    return {
        "Retry-After": str(retry_after_s),
        "X-RateLimit-Kind": exc.kind,
        "X-RateLimit-Reset": str(exc.reset_at_ms),
    }


async def _rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    body = RateLimitErrorBody(
        message=exc.detail,
        kind=exc.kind,
        operation=exc.operation,
        reset_at_ms=exc.reset_at_ms,
        retry_after_ms=exc.retry_after_ms,
        cost_remaining=exc.cost_remaining,
    )
    headers = rate_limit_headers(exc)
    if not is_versioned(request):
        return JSONResponse(content={"detail": body.model_dump()}, status_code=429, headers=headers)
    return _error(request, 429, body, headers)


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    return _error(request, exc.status_code, _split_detail(exc.detail, exc.status_code), exc.headers)


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    body = ErrorBody(code="REQUEST_VALIDATION_ERROR", message="Validation error", details={"errors": exc.errors()})
    return _error(request, 422, body)


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    # No stack traces on the wire; providers see a 500 and redeliver.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    return _error(request, 500, ErrorBody(code="INTERNAL_ERROR", message="Internal server error"))


def install_exception_handlers(app: FastAPI) -> None:
    # fastapi.HTTPException subclasses Starlette's, so one handler covers both.
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(RateLimitExceeded, _rate_limited)
    app.add_exception_handler(Exception, _unhandled_error)
