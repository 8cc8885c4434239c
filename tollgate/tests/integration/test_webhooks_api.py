from __future__ import annotations

import base64
import json
import time
from typing import Any
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from tollgate.apps.api.deps import get_billing_client, get_db
from tollgate.apps.api.main import create_app
from tollgate.core.config import get_settings
from tollgate.core.errors import BillingProviderError, BillingSubscriptionNotFoundError
from tollgate.domain.models import ProcessedWebhookEvent, SubscriptionRecord
from tollgate.persistence.db import SessionLocal
from tollgate.services.webhooks.signatures import compute_signature, compute_svix_signature


CLERK_SECRET = "whsec_" + base64.b64encode(b"clerk-signing-secret").decode("ascii")
POLAR_SECRET = base64.b64encode(b"polar-signing-secret").decode("ascii")


class FakeBillingClient:
    def __init__(self) -> None:
        self.subscription: dict[str, Any] | None = None
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def get_user_billing_subscription(self, subscriber_id: str) -> dict[str, Any]:
        self.calls.append(subscriber_id)
        if self.error is not None:
            raise self.error
        if self.subscription is None:
            raise BillingSubscriptionNotFoundError(subscriber_id)
        return self.subscription


_CLERK_SUBSCRIPTION = {
    "id": "sub_clerk_1",
    "status": "active",
    "subscription_items": [
        {
            "id": "item_1",
            "status": "active",
            "plan_period": "month",
            "plan": {"id": "plan_pro", "slug": "pro", "name": "Pro", "features": [{"slug": "ai"}]},
            "amount": {"amount": 2000, "currency": "usd"},
        }
    ],
}


def _apply_webhook_env(monkeypatch, **overrides: str | None) -> None:
    # Configure signing secrets and reset cached settings.
    env = {"CLERK_WEBHOOK_SECRET": CLERK_SECRET, "POLAR_WEBHOOK_SECRET": POLAR_SECRET, **overrides}
    for key, value in env.items():
        if value is None:
            monkeypatch.delenv(key, raising=False)
        else:
            monkeypatch.setenv(key, value)
    get_settings.cache_clear()


def _build_app(monkeypatch, billing: FakeBillingClient | None = None, **env_overrides: str | None):
    _apply_webhook_env(monkeypatch, **env_overrides)
    app = create_app()
    billing = billing or FakeBillingClient()
    app.dependency_overrides[get_billing_client] = lambda: billing
    return app


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _clerk_request(payload: dict[str, Any], *, secret: str = CLERK_SECRET) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    message_id = f"msg_{uuid4().hex}"
    timestamp = str(int(time.time()))
    headers = {
        "svix-id": message_id,
        "svix-timestamp": timestamp,
        "svix-signature": compute_svix_signature(message_id, timestamp, body, secret),
        "content-type": "application/json",
    }
    return body, headers


def _polar_request(payload: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    signature = compute_signature(body, POLAR_SECRET, digest_encoding="base64", secret_encoding="base64")
    return body, {"webhook-signature": signature, "content-type": "application/json"}


def _clerk_event(event_type: str = "subscription.updated", **data: Any) -> dict[str, Any]:
    base = {
        "id": "sub_clerk_1",
        "status": "active",
        "payer_id": "user_1",
        "updated_at": 1_704_067_200_000,
    }
    base.update(data)
    return {"type": event_type, "data": base}


def _polar_event(event_type: str = "subscription.updated", **data: Any) -> dict[str, Any]:
    base = {
        "id": "sub_polar_1",
        "status": "active",
        "customer_id": "cus_1",
        "product_id": "prod_pro",
        "product": {"name": "Pro"},
        "modified_at": "2024-01-01T00:00:00Z",
        "metadata": {"userId": "user_1"},
    }
    base.update(data)
    return {"type": event_type, "data": base}


async def _record(subscriber_id: str = "user_1") -> SubscriptionRecord | None:
    async with SessionLocal() as session:
        return await session.get(SubscriptionRecord, subscriber_id)


async def _ledger_count() -> int:
    async with SessionLocal() as session:
        return (await session.execute(select(func.count()).select_from(ProcessedWebhookEvent))).scalar_one()


@pytest.mark.asyncio
async def test_clerk_webhook_without_secret_is_misconfigured(monkeypatch) -> None:
    app = _build_app(monkeypatch, CLERK_WEBHOOK_SECRET=None)
    body, headers = _clerk_request(_clerk_event())
    async with _client(app) as client:
        response = await client.post("/webhooks/clerk", content=body, headers=headers)
    assert response.status_code == 500
    assert response.json()["detail"]["code"] == "WEBHOOK_MISCONFIGURED"


@pytest.mark.asyncio
async def test_clerk_webhook_missing_headers_lists_them(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    body, headers = _clerk_request(_clerk_event())
    headers.pop("svix-timestamp")
    headers.pop("svix-signature")
    async with _client(app) as client:
        response = await client.post("/webhooks/clerk", content=body, headers=headers)
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "WEBHOOK_HEADERS_MISSING"
    assert detail["missing"] == ["svix-timestamp", "svix-signature"]


@pytest.mark.asyncio
async def test_clerk_webhook_rejects_bad_signature(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    wrong_secret = "whsec_" + base64.b64encode(b"someone-else").decode("ascii")
    body, headers = _clerk_request(_clerk_event(), secret=wrong_secret)
    async with _client(app) as client:
        response = await client.post("/webhooks/clerk", content=body, headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert await _ledger_count() == 0


@pytest.mark.asyncio
async def test_clerk_webhook_ignores_unrelated_events(monkeypatch) -> None:
    billing = FakeBillingClient()
    app = _build_app(monkeypatch, billing)
    body, headers = _clerk_request({"type": "user.created", "data": {"id": "user_1"}})
    async with _client(app) as client:
        response = await client.post("/webhooks/clerk", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"ok": True, "ignored": "user.created"}
    assert billing.calls == []


@pytest.mark.asyncio
async def test_clerk_webhook_without_user_is_acknowledged(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    body, headers = _clerk_request(_clerk_event(payer_id=None))
    async with _client(app) as client:
        response = await client.post("/webhooks/clerk", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"ok": True, "ignored": "missing_user"}


@pytest.mark.asyncio
async def test_clerk_webhook_syncs_subscription_and_dedupes(monkeypatch) -> None:
    billing = FakeBillingClient()
    billing.subscription = _CLERK_SUBSCRIPTION
    app = _build_app(monkeypatch, billing)
    payload = _clerk_event()

    async with _client(app) as client:
        body, headers = _clerk_request(payload)
        first = await client.post("/webhooks/clerk", content=body, headers=headers)
        # Providers redeliver with a new message id but the same subscription body.
        body, headers = _clerk_request(payload)
        second = await client.post("/webhooks/clerk", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"ok": True}
    assert second.status_code == 200
    assert second.json() == {"ok": True, "duplicate": True}
    assert billing.calls == ["user_1"]

    record = await _record()
    assert record is not None
    assert record.provider == "clerk"
    assert record.plan_slug == "pro"
    assert record.granted_features == ["ai"]
    assert record.amount_minor_units == 2000
    assert await _ledger_count() == 1


@pytest.mark.asyncio
async def test_clerk_webhook_clears_when_provider_has_no_subscription(monkeypatch) -> None:
    billing = FakeBillingClient()
    billing.subscription = _CLERK_SUBSCRIPTION
    app = _build_app(monkeypatch, billing)
    async with _client(app) as client:
        body, headers = _clerk_request(_clerk_event())
        await client.post("/webhooks/clerk", content=body, headers=headers)

        billing.subscription = None
        body, headers = _clerk_request(_clerk_event(status="ended", updated_at=1_704_153_600_000))
        response = await client.post("/webhooks/clerk", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "cleared": True, "reason": "not_found"}
    record = await _record()
    assert record is not None
    assert record.status is None
    assert record.plan_slug is None


@pytest.mark.asyncio
async def test_clerk_webhook_billing_failure_is_retryable(monkeypatch) -> None:
    billing = FakeBillingClient()
    billing.error = BillingProviderError("Billing provider returned 503", status_code=503)
    app = _build_app(monkeypatch, billing)
    body, headers = _clerk_request(_clerk_event())
    async with _client(app) as client:
        response = await client.post("/webhooks/clerk", content=body, headers=headers)
    assert response.status_code == 500
    assert response.json()["detail"]["code"] == "BILLING_SYNC_FAILED"
    assert await _ledger_count() == 0


class SessionAwareBillingClient(FakeBillingClient):
    def __init__(self) -> None:
        super().__init__()
        self.session = None
        self.in_transaction_during_call: list[bool] = []

    async def get_user_billing_subscription(self, subscriber_id: str) -> dict[str, Any]:
        self.in_transaction_during_call.append(self.session.in_transaction())
        return await super().get_user_billing_subscription(subscriber_id)


@pytest.mark.asyncio
async def test_clerk_webhook_holds_no_transaction_during_provider_call(monkeypatch) -> None:
    billing = SessionAwareBillingClient()
    billing.subscription = _CLERK_SUBSCRIPTION
    app = _build_app(monkeypatch, billing)

    async def _tracked_db():
        async with SessionLocal() as session:
            billing.session = session
            yield session

    app.dependency_overrides[get_db] = _tracked_db
    body, headers = _clerk_request(_clerk_event())
    async with _client(app) as client:
        response = await client.post("/webhooks/clerk", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert billing.in_transaction_during_call == [False]
    record = await _record()
    assert record is not None
    assert record.plan_slug == "pro"


@pytest.mark.asyncio
async def test_clerk_webhook_rejects_non_json_body(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    body = b"not json"
    message_id, timestamp = "msg_raw", str(int(time.time()))
    headers = {
        "svix-id": message_id,
        "svix-timestamp": timestamp,
        "svix-signature": compute_svix_signature(message_id, timestamp, body, CLERK_SECRET),
    }
    async with _client(app) as client:
        response = await client.post("/webhooks/clerk", content=body, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "WEBHOOK_PAYLOAD_INVALID"


@pytest.mark.asyncio
async def test_polar_webhook_requires_signature_header(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    async with _client(app) as client:
        response = await client.post("/webhooks/polar", content=json.dumps(_polar_event()).encode("utf-8"))
    assert response.status_code == 400
    assert response.json()["detail"]["missing"] == ["webhook-signature"]


@pytest.mark.asyncio
async def test_polar_webhook_rejects_tampered_body(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    body, headers = _polar_request(_polar_event())
    async with _client(app) as client:
        response = await client.post("/webhooks/polar", content=body + b" ", headers=headers)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_polar_webhook_applies_and_dedupes(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    body, headers = _polar_request(_polar_event("subscription.created"))
    async with _client(app) as client:
        first = await client.post("/webhooks/polar", content=body, headers=headers)
        second = await client.post("/webhooks/polar", content=body, headers=headers)
    assert first.json() == {"ok": True}
    assert second.json() == {"ok": True, "duplicate": True}

    record = await _record()
    assert record is not None
    assert record.provider == "polar"
    assert record.status == "active"
    assert record.plan_identifier == "prod_pro"


@pytest.mark.asyncio
async def test_polar_cancel_keeps_access_until_period_end(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    async with _client(app) as client:
        body, headers = _polar_request(_polar_event("subscription.created"))
        await client.post("/webhooks/polar", content=body, headers=headers)
        body, headers = _polar_request(
            _polar_event("subscription.canceled", modified_at="2024-01-02T00:00:00Z", metadata={})
        )
        response = await client.post("/webhooks/polar", content=body, headers=headers)
    assert response.json() == {"ok": True}
    record = await _record()
    assert record is not None
    assert record.status == "active"
    assert record.cancel_at_period_end is True


@pytest.mark.asyncio
async def test_polar_webhook_without_user_id_is_unprocessable(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    body, headers = _polar_request(_polar_event(metadata={"userId": ""}))
    async with _client(app) as client:
        response = await client.post("/webhooks/polar", content=body, headers=headers)
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "WEBHOOK_SUBSCRIBER_MISSING"
    assert await _ledger_count() == 0


@pytest.mark.asyncio
async def test_polar_revoke_for_unknown_subscription_is_unprocessable(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    body, headers = _polar_request(_polar_event("subscription.revoked", id="sub_missing", metadata={}))
    async with _client(app) as client:
        response = await client.post("/webhooks/polar", content=body, headers=headers)
    assert response.status_code == 422
    assert await _ledger_count() == 0


@pytest.mark.asyncio
async def test_polar_unknown_status_is_left_for_redelivery(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    body, headers = _polar_request(_polar_event(status="paused"))
    async with _client(app) as client:
        response = await client.post("/webhooks/polar", content=body, headers=headers)
    assert response.status_code == 500
    assert response.json()["detail"]["code"] == "SUBSCRIPTION_STATUS_UNKNOWN"
    assert await _ledger_count() == 0


@pytest.mark.asyncio
async def test_polar_irrelevant_event_is_ignored(monkeypatch) -> None:
    app = _build_app(monkeypatch)
    body, headers = _polar_request({"type": "checkout.updated", "data": {"id": "co_1"}})
    async with _client(app) as client:
        response = await client.post("/webhooks/polar", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"ok": True, "ignored": "checkout.updated"}
