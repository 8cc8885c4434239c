from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.errors import SubscriberIdentityMissingError
from tollgate.domain.models import AiRateLimitState, ProcessedWebhookEvent, SubscriptionRecord
from tollgate.persistence.db import supports_row_locks
from tollgate.services.webhooks.events import SubscriptionSnapshot, WebhookAction, WebhookEvent
from tollgate.services.webhooks.idempotency import build_idempotency_key


logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_CLEARED = "cleared"


@dataclass(frozen=True)
class ReconcileOutcome:
    status: str
    idempotency_key: str | None = None
    reason: str | None = None


def _apply_snapshot(record: SubscriptionRecord, snapshot: SubscriptionSnapshot) -> None:
    # Full-snapshot overwrite; ordering between deliveries is last write wins.
    record.external_subscription_id = snapshot.subscription_id
    record.external_subscription_item_id = snapshot.subscription_item_id
    record.status = snapshot.status
    record.plan_identifier = snapshot.plan_identifier
    record.plan_slug = snapshot.plan_slug
    record.plan_name = snapshot.plan_name
    record.billing_period = snapshot.billing_period
    record.amount_minor_units = snapshot.amount_minor_units
    record.currency = snapshot.currency
    record.granted_features = list(snapshot.granted_features)
    record.trial_start_ms = snapshot.trial_start_ms
    record.trial_end_ms = snapshot.trial_end_ms
    record.is_trial_active = snapshot.is_trial_active
    record.current_period_end_ms = snapshot.current_period_end_ms
    if snapshot.cancel_at_period_end is not None:
        record.cancel_at_period_end = snapshot.cancel_at_period_end
    if snapshot.metadata is not None:
        record.metadata_json = dict(snapshot.metadata)


def _clear_record(record: SubscriptionRecord) -> None:
    # Cleared records keep the row but carry no subscription and no entitlements.
    record.external_subscription_id = None
    record.external_subscription_item_id = None
    record.status = None
    record.plan_identifier = None
    record.plan_slug = None
    record.plan_name = None
    record.billing_period = None
    record.amount_minor_units = None
    record.currency = None
    record.granted_features = []
    record.trial_start_ms = None
    record.trial_end_ms = None
    record.is_trial_active = False
    record.current_period_end_ms = None
    record.cancel_at_period_end = False


class WebhookReconciler:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time

    def _now_ms(self) -> int:
        return int(round(self._time_provider() * 1000))

    def idempotency_key(self, event: WebhookEvent) -> str:
        return build_idempotency_key(
            provider=event.provider,
            subscription_id=event.subscription_id,
            status=event.status,
            updated_at=event.raw_timestamp,
            now_ms=self._now_ms(),
        )

    async def is_processed(self, *, session: AsyncSession, idempotency_key: str) -> bool:
        result = await session.execute(
            select(ProcessedWebhookEvent.idempotency_key).where(
                ProcessedWebhookEvent.idempotency_key == idempotency_key
            )
        )
        return result.scalar_one_or_none() is not None

    async def reconcile(
        self,
        *,
        session: AsyncSession,
        event: WebhookEvent,
        idempotency_key: str | None = None,
    ) -> ReconcileOutcome:
        """Apply one verified webhook event at most once.

        The ledger row and the subscription change commit in the same
        transaction: a crash before commit leaves neither, and a concurrent
        duplicate loses the primary-key race and reports as a duplicate.
        """
        if event.action is WebhookAction.IGNORE:
            return ReconcileOutcome(status=OUTCOME_IGNORED, reason=event.event_type)
        key = idempotency_key or self.idempotency_key(event)
        now_ms = self._now_ms()

        in_transaction = session.in_transaction()
        tx_context = session.begin_nested() if in_transaction else session.begin()
        try:
            async with tx_context:
                if await self.is_processed(session=session, idempotency_key=key):
                    outcome = ReconcileOutcome(status=OUTCOME_DUPLICATE, idempotency_key=key)
                else:
                    session.add(
                        ProcessedWebhookEvent(
                            idempotency_key=key,
                            provider=event.provider,
                            event_type=event.event_type,
                            subscriber_id=event.subscriber_id,
                        )
                    )
                    await session.flush()
                    outcome = await self._apply(session, event, key, now_ms)
        except IntegrityError:
            logger.info("webhook_duplicate_race provider=%s key=%s", event.provider, key)
            outcome = ReconcileOutcome(status=OUTCOME_DUPLICATE, idempotency_key=key)
        if in_transaction:
            await session.commit()

        if outcome.status == OUTCOME_DUPLICATE:
            logger.info(
                "webhook_duplicate_skipped provider=%s event_type=%s key=%s",
                event.provider,
                event.event_type,
                key,
            )
        else:
            logger.info(
                "webhook_reconciled provider=%s event_type=%s outcome=%s key=%s",
                event.provider,
                event.event_type,
                outcome.status,
                key,
            )
        return outcome

    async def _load_record(
        self,
        session: AsyncSession,
        *,
        subscriber_id: str | None,
        provider: str,
        subscription_id: str | None,
    ) -> SubscriptionRecord | None:
        if subscriber_id:
            stmt = select(SubscriptionRecord).where(SubscriptionRecord.subscriber_id == subscriber_id)
        elif subscription_id:
            # Cancellation events may only name the provider's subscription.
            stmt = select(SubscriptionRecord).where(
                SubscriptionRecord.provider == provider,
                SubscriptionRecord.external_subscription_id == subscription_id,
            )
        else:
            return None
        if supports_row_locks(session):
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _apply(
        self,
        session: AsyncSession,
        event: WebhookEvent,
        key: str,
        now_ms: int,
    ) -> ReconcileOutcome:
        record = await self._load_record(
            session,
            subscriber_id=event.subscriber_id,
            provider=event.provider,
            subscription_id=event.subscription_id,
        )

        if event.action is WebhookAction.CLEAR:
            if record is not None:
                _clear_record(record)
                record.last_applied_event_type = event.event_type
                record.updated_at_ms = now_ms
            await self._reset_usage(session, event)
            return ReconcileOutcome(status=OUTCOME_CLEARED, idempotency_key=key)

        if event.action in (WebhookAction.UPSERT, WebhookAction.UNCANCEL) and event.snapshot is not None:
            if not event.subscriber_id:
                raise SubscriberIdentityMissingError(
                    f"Subscription {event.subscription_id or '<missing id>'} carries no subscriber id"
                )
            if record is None:
                record = SubscriptionRecord(subscriber_id=event.subscriber_id, updated_at_ms=now_ms)
                session.add(record)
            record.provider = event.provider
            _apply_snapshot(record, event.snapshot)

        if record is None:
            if event.subscriber_id is None:
                raise SubscriberIdentityMissingError(
                    f"No subscriber found for subscription {event.subscription_id or '<missing id>'}"
                )
            logger.warning(
                "webhook_subscription_unknown provider=%s event_type=%s subscription_id=%s",
                event.provider,
                event.event_type,
                event.subscription_id,
            )
            return ReconcileOutcome(status=OUTCOME_IGNORED, idempotency_key=key, reason="unknown_subscription")

        if event.action is WebhookAction.CANCEL:
            # Access continues until period end; only the pending marker changes.
            record.cancel_at_period_end = True
        elif event.action is WebhookAction.UNCANCEL:
            record.cancel_at_period_end = False
        elif event.action is WebhookAction.REVOKE:
            record.status = "canceled"
            record.granted_features = []
            record.cancel_at_period_end = False

        record.last_applied_event_type = event.event_type
        record.updated_at_ms = now_ms
        await session.flush()
        await self._reset_usage(session, event, subscriber_id=record.subscriber_id)
        return ReconcileOutcome(status=OUTCOME_APPLIED, idempotency_key=key)

    async def _reset_usage(
        self,
        session: AsyncSession,
        event: WebhookEvent,
        *,
        subscriber_id: str | None = None,
    ) -> None:
        target = subscriber_id or event.subscriber_id
        if not event.reset_usage or not target:
            return
        await session.execute(delete(AiRateLimitState).where(AiRateLimitState.subscriber_id == target))


_webhook_reconciler: WebhookReconciler | None = None


def get_webhook_reconciler() -> WebhookReconciler:
    global _webhook_reconciler
    if _webhook_reconciler is None:
        _webhook_reconciler = WebhookReconciler()
    return _webhook_reconciler


def reset_webhook_reconciler() -> None:
    # Reset cached services for deterministic tests.
    global _webhook_reconciler
    _webhook_reconciler = None
