from __future__ import annotations

from dataclasses import replace
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.apps.api.deps import get_billing_client, get_db
from tollgate.core.config import get_settings
from tollgate.core.errors import (
    BillingProviderError,
    BillingSubscriptionNotFoundError,
    SubscriberIdentityMissingError,
    UnknownSubscriptionStatusError,
    WebhookHeadersMissingError,
)
from tollgate.services.billing_provider import BillingProviderClient
from tollgate.services.webhooks.events import (
    WebhookAction,
    WebhookEvent,
    clerk_snapshot_from_subscription,
    parse_clerk_event,
    parse_polar_event,
)
from tollgate.services.webhooks.reconciler import (
    OUTCOME_CLEARED,
    OUTCOME_DUPLICATE,
    OUTCOME_IGNORED,
    ReconcileOutcome,
    get_webhook_reconciler,
)
from tollgate.services.webhooks.signatures import parse_svix_headers, verify_signature, verify_svix_signature


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

POLAR_SIGNATURE_HEADER = "webhook-signature"


def _misconfigured(provider: str) -> HTTPException:
    logger.error("webhook_secret_missing provider=%s", provider)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "WEBHOOK_MISCONFIGURED", "message": "Server misconfiguration"},
    )


def _invalid_signature(provider: str, reason: str) -> HTTPException:
    logger.warning("webhook_signature_rejected provider=%s reason=%s", provider, reason)
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "WEBHOOK_SIGNATURE_INVALID", "message": "Invalid signature"},
    )


def _parse_payload(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        payload = None
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "WEBHOOK_PAYLOAD_INVALID", "message": "Webhook body is not a JSON object"},
        )
    return payload


def _outcome_body(outcome: ReconcileOutcome) -> dict[str, Any]:
    if outcome.status == OUTCOME_DUPLICATE:
        return {"ok": True, "duplicate": True}
    if outcome.status == OUTCOME_CLEARED:
        body: dict[str, Any] = {"ok": True, "cleared": True}
        if outcome.reason:
            body["reason"] = outcome.reason
        return body
    if outcome.status == OUTCOME_IGNORED:
        return {"ok": True, "ignored": outcome.reason}
    return {"ok": True}


async def _reconcile_event(
    db: AsyncSession,
    event: WebhookEvent,
    *,
    idempotency_key: str | None = None,
) -> ReconcileOutcome:
    reconciler = get_webhook_reconciler()
    try:
        return await reconciler.reconcile(session=db, event=event, idempotency_key=idempotency_key)
    except SubscriberIdentityMissingError as exc:
        logger.warning(
            "webhook_subscriber_unresolved provider=%s event_type=%s metadata=%s",
            event.provider,
            event.event_type,
            event.masked_metadata,
        )
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "WEBHOOK_SUBSCRIBER_MISSING", "message": str(exc)},
        ) from exc


@router.post("/clerk")
async def clerk_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    billing: BillingProviderClient = Depends(get_billing_client),
) -> dict[str, Any]:
    settings = get_settings()
    secret = settings.clerk_webhook_secret
    if not secret:
        raise _misconfigured("clerk")
    try:
        headers = parse_svix_headers(request.headers)
    except WebhookHeadersMissingError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "WEBHOOK_HEADERS_MISSING", "message": str(exc), "missing": exc.missing},
        ) from exc

    raw_body = await request.body()
    verification = verify_svix_signature(
        headers,
        raw_body,
        secret,
        tolerance_seconds=settings.webhook_timestamp_tolerance_s,
    )
    if not verification.ok:
        raise _invalid_signature("clerk", verification.reason)

    event = parse_clerk_event(_parse_payload(raw_body), svix_timestamp=headers.timestamp)
    if event.action is WebhookAction.IGNORE:
        return {"ok": True, "ignored": event.event_type}
    if not event.subscriber_id:
        # Identity-less billing events are acknowledged so the provider stops retrying.
        logger.warning("clerk_webhook_subscriber_unresolved event_type=%s", event.event_type)
        return {"ok": True, "ignored": "missing_user"}

    reconciler = get_webhook_reconciler()
    key = reconciler.idempotency_key(event)
    # Skip the provider round trip for replays; the ledger insert still guards races.
    if await reconciler.is_processed(session=db, idempotency_key=key):
        logger.info("webhook_duplicate_skipped provider=clerk event_type=%s key=%s", event.event_type, key)
        return {"ok": True, "duplicate": True}
    # End the read transaction so no pooled connection idles across the provider call.
    await db.rollback()

    try:
        subscription = await billing.get_user_billing_subscription(event.subscriber_id)
    except BillingSubscriptionNotFoundError:
        outcome = await _reconcile_event(db, replace(event, action=WebhookAction.CLEAR), idempotency_key=key)
        if outcome.status == OUTCOME_CLEARED:
            return {"ok": True, "cleared": True, "reason": "not_found"}
        return _outcome_body(outcome)
    except BillingProviderError as exc:
        logger.error(
            "clerk_webhook_sync_failed event_type=%s status_code=%s", event.event_type, exc.status_code
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "BILLING_SYNC_FAILED", "message": "Failed to sync billing"},
        ) from exc

    snapshot = clerk_snapshot_from_subscription(subscription)
    if snapshot is None:
        event = replace(event, action=WebhookAction.CLEAR)
    else:
        event = replace(event, snapshot=snapshot)
    outcome = await _reconcile_event(db, event, idempotency_key=key)
    return _outcome_body(outcome)


@router.post("/polar")
async def polar_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    settings = get_settings()
    secret = settings.polar_webhook_secret
    if not secret:
        raise _misconfigured("polar")
    signature = (request.headers.get(POLAR_SIGNATURE_HEADER) or "").strip()
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "WEBHOOK_HEADERS_MISSING",
                "message": f"missing_required_headers:{POLAR_SIGNATURE_HEADER}",
                "missing": [POLAR_SIGNATURE_HEADER],
            },
        )

    raw_body = await request.body()
    if not verify_signature(
        raw_body,
        signature,
        secret,
        digest_encoding="base64",
        secret_encoding="base64",
    ):
        raise _invalid_signature("polar", "signature_mismatch")

    payload = _parse_payload(raw_body)
    try:
        event = parse_polar_event(payload)
    except UnknownSubscriptionStatusError as exc:
        # Leave the delivery unrecorded so the provider retries once a mapping exists.
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "SUBSCRIPTION_STATUS_UNKNOWN", "message": str(exc)},
        ) from exc

    if event.action is WebhookAction.IGNORE:
        return {"ok": True, "ignored": event.event_type}
    if not event.subscriber_id and event.action in (WebhookAction.UPSERT, WebhookAction.UNCANCEL):
        logger.error(
            "polar_webhook_subscriber_missing event_type=%s subscription_id=%s metadata=%s",
            event.event_type,
            event.subscription_id,
            event.masked_metadata,
        )
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "WEBHOOK_SUBSCRIBER_MISSING",
                "message": (
                    "Subscription metadata.userId is missing or empty; set it when creating the checkout. "
                    f"SubscriptionId: {event.subscription_id or '<missing id>'}"
                ),
            },
        )

    outcome = await _reconcile_event(db, event)
    return _outcome_body(outcome)
