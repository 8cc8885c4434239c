from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.config import get_settings
from tollgate.persistence.db import get_session
from tollgate.providers.llm.base import TextGenerator
from tollgate.providers.llm.factory import get_text_generator
from tollgate.services.ai_rate_limit import AiRateLimitService, get_ai_rate_limit_service
from tollgate.services.billing_provider import BillingProviderClient, get_billing_provider_client


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_subscriber_id(
    x_subscriber_id: str | None = Header(default=None, alias="X-Subscriber-Id"),
) -> str:
    # The edge authenticates the caller and forwards the subscriber id; we only require it.
    subscriber_id = (x_subscriber_id or "").strip()
    if not subscriber_id:
        raise _auth_error("Missing X-Subscriber-Id header")
    return subscriber_id


async def require_ops_token(
    x_ops_token: str | None = Header(default=None, alias="X-Ops-Token"),
) -> None:
    # Fail closed when no operator token is configured.
    expected = get_settings().ops_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Ops endpoints are disabled"},
        )
    if not x_ops_token or not hmac.compare_digest(x_ops_token.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Invalid ops token")


def get_billing_client() -> BillingProviderClient:
    return get_billing_provider_client()


def get_generator() -> TextGenerator:
    return get_text_generator()


def get_rate_limiter() -> AiRateLimitService:
    return get_ai_rate_limit_service()
