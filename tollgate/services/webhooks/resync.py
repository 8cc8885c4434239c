from __future__ import annotations

from dataclasses import replace
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.errors import BillingSubscriptionNotFoundError
from tollgate.services.billing_provider import BillingProviderClient
from tollgate.services.webhooks.events import (
    PROVIDER_CLERK,
    WebhookAction,
    WebhookEvent,
    clerk_snapshot_from_subscription,
)
from tollgate.services.webhooks.reconciler import ReconcileOutcome, WebhookReconciler, get_webhook_reconciler


logger = logging.getLogger(__name__)

RESYNC_EVENT_TYPE = "manual.resync"


async def resync_subscriber(
    *,
    session: AsyncSession,
    subscriber_id: str,
    billing: BillingProviderClient,
    reconciler: WebhookReconciler | None = None,
) -> ReconcileOutcome:
    """Re-apply the provider's current subscription for one subscriber.

    Self-heals records after missed or failed deliveries. Runs through the
    same ledger and upsert/clear path as webhooks; each run gets a fresh key.
    """
    reconciler = reconciler or get_webhook_reconciler()
    event = WebhookEvent(
        provider=PROVIDER_CLERK,
        event_type=RESYNC_EVENT_TYPE,
        action=WebhookAction.UPSERT,
        subscriber_id=subscriber_id,
        subscription_id=None,
        status=None,
    )
    try:
        subscription = await billing.get_user_billing_subscription(subscriber_id)
    except BillingSubscriptionNotFoundError:
        logger.info("subscription_resync_not_found subscriber_id=%s", subscriber_id)
        event = replace(event, action=WebhookAction.CLEAR)
    else:
        snapshot = clerk_snapshot_from_subscription(subscription)
        if snapshot is None:
            event = replace(event, action=WebhookAction.CLEAR)
        else:
            event = replace(
                event,
                snapshot=snapshot,
                subscription_id=snapshot.subscription_id,
                status=snapshot.status,
            )
    return await reconciler.reconcile(session=session, event=event)
