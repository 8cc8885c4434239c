from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from tollgate.domain.models import AiRateLimitState, ProcessedWebhookEvent
from tollgate.persistence.db import SessionLocal
from tollgate.services.ai_rate_limit import AiRateLimitService, state_key
from tollgate.services.maintenance import prune_ai_rate_limits, prune_webhook_events, run_maintenance_task
from tollgate.tests.utils.clock import ManualClock


_NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _ledger_row(key: str, processed_at: datetime) -> ProcessedWebhookEvent:
    return ProcessedWebhookEvent(
        idempotency_key=key,
        provider="polar",
        event_type="subscription.updated",
        subscriber_id="user_1",
        processed_at=processed_at,
    )


@pytest.mark.asyncio
async def test_prune_webhook_events_respects_retention_window() -> None:
    async with SessionLocal() as session:
        session.add_all(
            [
                _ledger_row("old", _NOW - timedelta(days=31)),
                _ledger_row("recent", _NOW - timedelta(days=29)),
            ]
        )
        await session.commit()

    async with SessionLocal() as session:
        deleted = await prune_webhook_events(session, now=_NOW)
        await session.commit()
    assert deleted == 1

    async with SessionLocal() as session:
        keys = (await session.execute(select(ProcessedWebhookEvent.idempotency_key))).scalars().all()
    assert keys == ["recent"]


@pytest.mark.asyncio
async def test_prune_ai_rate_limits_uses_service_retention() -> None:
    clock = ManualClock()
    async with SessionLocal() as session:
        session.add(
            AiRateLimitState(
                key=state_key("user_1", "generate"),
                subscriber_id="user_1",
                operation="generate",
                request_count=1,
                total_cost=0.01,
                tokens_consumed=0,
                window_start_ms=clock.now_ms - 2 * 3_600_000,
                last_request_at_ms=clock.now_ms - 2 * 3_600_000,
            )
        )
        await session.commit()

    async with SessionLocal() as session:
        deleted = await prune_ai_rate_limits(session, service=AiRateLimitService(time_provider=clock))
        await session.commit()
    assert deleted == 1


@pytest.mark.asyncio
async def test_unknown_maintenance_task_is_rejected() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValueError):
            await run_maintenance_task(session, "vacuum")  # type: ignore[arg-type]
