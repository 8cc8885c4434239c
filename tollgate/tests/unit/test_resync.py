from __future__ import annotations

from typing import Any

import pytest

from tollgate.core.errors import BillingSubscriptionNotFoundError
from tollgate.domain.models import SubscriptionRecord
from tollgate.persistence.db import SessionLocal
from tollgate.services.webhooks.reconciler import OUTCOME_APPLIED, OUTCOME_CLEARED, WebhookReconciler
from tollgate.services.webhooks.resync import resync_subscriber
from tollgate.tests.utils.clock import ManualClock


class _FakeBilling:
    def __init__(self, subscription: dict[str, Any] | None) -> None:
        self.subscription = subscription

    async def get_user_billing_subscription(self, subscriber_id: str) -> dict[str, Any]:
        if self.subscription is None:
            raise BillingSubscriptionNotFoundError(subscriber_id)
        return self.subscription


_SUBSCRIPTION = {
    "id": "sub_clerk_1",
    "status": "active",
    "subscription_items": [
        {
            "id": "item_1",
            "status": "active",
            "plan": {"id": "plan_pro", "slug": "pro", "name": "Pro", "features": [{"slug": "ai"}]},
        }
    ],
}


async def _resync(billing: _FakeBilling, reconciler: WebhookReconciler):
    async with SessionLocal() as session:
        return await resync_subscriber(
            session=session, subscriber_id="user_1", billing=billing, reconciler=reconciler
        )


@pytest.mark.asyncio
async def test_resync_upserts_current_subscription() -> None:
    reconciler = WebhookReconciler(time_provider=ManualClock())
    outcome = await _resync(_FakeBilling(_SUBSCRIPTION), reconciler)
    assert outcome.status == OUTCOME_APPLIED

    async with SessionLocal() as session:
        record = await session.get(SubscriptionRecord, "user_1")
    assert record is not None
    assert record.plan_slug == "pro"
    assert record.granted_features == ["ai"]
    assert record.last_applied_event_type == "manual.resync"


@pytest.mark.asyncio
async def test_resync_clears_when_provider_has_no_subscription() -> None:
    clock = ManualClock()
    reconciler = WebhookReconciler(time_provider=clock)
    await _resync(_FakeBilling(_SUBSCRIPTION), reconciler)
    clock.advance_ms(1_000)

    outcome = await _resync(_FakeBilling(None), reconciler)
    assert outcome.status == OUTCOME_CLEARED

    async with SessionLocal() as session:
        record = await session.get(SubscriptionRecord, "user_1")
    assert record is not None
    assert record.status is None
    assert record.plan_slug is None
