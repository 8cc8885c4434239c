from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tollgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tollgate.apps.api.envelope import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


# Unversioned probes get the bare body; /v1 callers get the envelope.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload.model_dump())
