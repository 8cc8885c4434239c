from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from tollgate.apps.api.envelope import API_VERSION, RATE_LIMITED_CODE, ErrorEnvelope, RateLimitEnvelope


_META_EXAMPLE = {"request_id": "req_example", "api_version": API_VERSION}


def _response(description: str, model: type[BaseModel], error: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": model,
        "description": description,
        "content": {"application/json": {"example": {"error": error, "meta": _META_EXAMPLE}}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        ErrorEnvelope,
        {"code": "AUTH_UNAUTHORIZED", "message": "Missing X-Subscriber-Id header"},
    ),
    422: _response(
        "Validation error",
        ErrorEnvelope,
        {"code": "REQUEST_VALIDATION_ERROR", "message": "Validation error"},
    ),
    429: _response(
        "AI rate limit exceeded",
        RateLimitEnvelope,
        {
            "code": RATE_LIMITED_CODE,
            "message": "AI burst limit exceeded. Please wait 12s between requests.",
            "kind": "burst_exceeded",
            "operation": "generate",
            "reset_at_ms": 1735689612000,
            "retry_after_ms": 12000,
            "cost_remaining": 0.07,
        },
    ),
    500: _response("Internal error", ErrorEnvelope, {"code": "INTERNAL_ERROR", "message": "Internal server error"}),
}
