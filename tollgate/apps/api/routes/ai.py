from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.apps.api.deps import get_db, get_generator, get_rate_limiter, get_subscriber_id
from tollgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tollgate.apps.api.envelope import SuccessEnvelope, success_response
from tollgate.core.config import get_settings
from tollgate.domain.models import SubscriptionRecord
from tollgate.providers.llm.base import TextGenerator
from tollgate.services.ai_rate_limit import AiRateLimitService, RateLimitDecision, UsageBucket
from tollgate.services.tiers import SubscriptionTier, tier_for_subscription


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["ai"], responses=DEFAULT_ERROR_RESPONSES)


class RateLimitCheckRequest(BaseModel):
    operation: str = Field(min_length=1, max_length=64)
    estimated_cost: float | None = Field(default=None, ge=0)


class RateLimitDecisionResponse(BaseModel):
    allowed: bool
    remaining: int
    reset_at_ms: int
    cost_remaining: float | None
    reason: str | None = None
    kind: str | None = None
    tier: str


class UsageBucketResponse(BaseModel):
    requests: int
    tokens: int
    cost: float


class UsageResponse(BaseModel):
    subscriber_id: str
    tier: str
    hourly: UsageBucketResponse
    daily: UsageBucketResponse


class GenerateRequest(BaseModel):
    messages: list[dict[str, Any]] = Field(min_length=1)
    model: str | None = None
    operation: str = Field(default="generate", min_length=1, max_length=64)
    estimated_cost: float | None = Field(default=None, ge=0)
    estimated_tokens: int = Field(default=0, ge=0)


class GenerateResponse(BaseModel):
    text: str
    model: str
    tier: str
    remaining: int | None
    cost_remaining: float | None


async def _resolve_tier(db: AsyncSession, subscriber_id: str) -> SubscriptionTier:
    # Tier comes from reconciled billing state, never from the caller.
    record = await db.get(SubscriptionRecord, subscriber_id)
    return tier_for_subscription(record)


def _decision_payload(decision: RateLimitDecision, tier: SubscriptionTier) -> dict[str, Any]:
    return RateLimitDecisionResponse(
        allowed=decision.allowed,
        remaining=decision.remaining,
        reset_at_ms=decision.reset_at_ms,
        cost_remaining=decision.cost_remaining,
        reason=decision.reason,
        kind=decision.kind,
        tier=tier.value,
    ).model_dump()


def _bucket_payload(bucket: UsageBucket) -> UsageBucketResponse:
    return UsageBucketResponse(requests=bucket.requests, tokens=bucket.tokens, cost=bucket.cost)


@router.post(
    "/rate-limit/check",
    response_model=SuccessEnvelope[RateLimitDecisionResponse] | RateLimitDecisionResponse,
)
async def check_rate_limit(
    request: Request,
    payload: RateLimitCheckRequest,
    subscriber_id: str = Depends(get_subscriber_id),
    db: AsyncSession = Depends(get_db),
    limiter: AiRateLimitService = Depends(get_rate_limiter),
) -> dict[str, Any]:
    # Advisory only; admission is decided again by enforce on the costed call.
    tier = await _resolve_tier(db, subscriber_id)
    decision = await limiter.check_allowed(
        session=db,
        subscriber_id=subscriber_id,
        operation=payload.operation,
        tier=tier,
        estimated_cost=payload.estimated_cost,
    )
    return success_response(request=request, data=_decision_payload(decision, tier))


@router.get("/usage", response_model=SuccessEnvelope[UsageResponse] | UsageResponse)
async def get_usage(
    request: Request,
    subscriber_id: str = Depends(get_subscriber_id),
    db: AsyncSession = Depends(get_db),
    limiter: AiRateLimitService = Depends(get_rate_limiter),
) -> dict[str, Any]:
    tier = await _resolve_tier(db, subscriber_id)
    stats = await limiter.get_usage_stats(session=db, subscriber_id=subscriber_id)
    data = UsageResponse(
        subscriber_id=subscriber_id,
        tier=tier.value,
        hourly=_bucket_payload(stats.hourly),
        daily=_bucket_payload(stats.daily),
    )
    return success_response(request=request, data=data.model_dump())


@router.post("/generate", response_model=SuccessEnvelope[GenerateResponse] | GenerateResponse)
async def generate(
    request: Request,
    payload: GenerateRequest,
    subscriber_id: str = Depends(get_subscriber_id),
    db: AsyncSession = Depends(get_db),
    limiter: AiRateLimitService = Depends(get_rate_limiter),
    generator: TextGenerator = Depends(get_generator),
) -> dict[str, Any]:
    settings = get_settings()
    tier = await _resolve_tier(db, subscriber_id)
    estimated_cost = (
        payload.estimated_cost if payload.estimated_cost is not None else settings.llm_default_estimated_cost
    )
    remaining: int | None = None
    cost_remaining: float | None = None
    if settings.ai_rate_limit_enabled:
        # Admission must commit before the costed call so concurrent requests see it.
        # Denials raise RateLimitExceeded, rendered as a 429 by the envelope handlers.
        decision = await limiter.enforce(
            session=db,
            subscriber_id=subscriber_id,
            operation=payload.operation,
            tier=tier,
            estimated_cost=estimated_cost,
            tokens=payload.estimated_tokens,
        )
        remaining = decision.remaining
        cost_remaining = decision.cost_remaining

    model = payload.model or settings.llm_default_model
    text = "".join(generator.stream(payload.messages, model=model)).strip()
    data = GenerateResponse(
        text=text,
        model=model,
        tier=tier.value,
        remaining=remaining,
        cost_remaining=cost_remaining,
    )
    return success_response(request=request, data=data.model_dump())
