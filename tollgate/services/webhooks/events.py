from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import logging
from typing import Any, Mapping

from tollgate.core.errors import UnknownSubscriptionStatusError
from tollgate.services.webhooks.idempotency import normalize_timestamp_ms


logger = logging.getLogger(__name__)

PROVIDER_CLERK = "clerk"
PROVIDER_POLAR = "polar"


class WebhookAction(str, Enum):
    UPSERT = "upsert"
    CANCEL = "cancel"
    REVOKE = "revoke"
    UNCANCEL = "uncancel"
    CLEAR = "clear"
    IGNORE = "ignore"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    # Provider-neutral view of the subscription fields we persist per subscriber.
    subscription_id: str | None
    status: str | None
    subscription_item_id: str | None = None
    plan_identifier: str | None = None
    plan_slug: str | None = None
    plan_name: str | None = None
    billing_period: str | None = None
    amount_minor_units: int | None = None
    currency: str | None = None
    granted_features: tuple[str, ...] = ()
    trial_start_ms: int | None = None
    trial_end_ms: int | None = None
    is_trial_active: bool = False
    current_period_end_ms: int | None = None
    # None leaves the stored pending-cancellation marker untouched.
    cancel_at_period_end: bool | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class WebhookEvent:
    provider: str
    event_type: str
    action: WebhookAction
    subscriber_id: str | None
    subscription_id: str | None
    status: str | None
    raw_timestamp: Any = None
    snapshot: SubscriptionSnapshot | None = None
    # Start the subscriber's AI usage windows afresh once the change commits.
    reset_usage: bool = False
    masked_metadata: dict[str, Any] = field(default_factory=dict)


def _pick(data: Mapping[str, Any] | None, *names: str) -> Any:
    # Providers send snake_case on the wire while SDK fixtures often use camelCase.
    if not isinstance(data, Mapping):
        return None
    for name in names:
        value = data.get(name)
        if value is not None:
            return value
    return None


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _optional_ms(value: Any) -> int | None:
    if value is None:
        return None
    parsed = normalize_timestamp_ms(value, now_ms=0)
    return parsed or None


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


# --- Clerk billing (Svix-signed) ---

_CLERK_PRIMARY_ITEM_STATUSES = ("active", "upcoming", "past_due")


def is_relevant_clerk_event(event_type: str) -> bool:
    return event_type.startswith("subscriptionItem.") or event_type.startswith("subscription.")


def resolve_clerk_subscriber_id(event_type: str, data: Mapping[str, Any] | None) -> str | None:
    # Item events only carry the payer object; subscription events may carry payer_id directly.
    payer = _pick(data, "payer")
    payer_user_id = _clean_str(_pick(payer, "user_id", "userId"))
    if event_type.startswith("subscriptionItem."):
        return payer_user_id
    if event_type.startswith("subscription."):
        return _clean_str(_pick(data, "payer_id", "payerId")) or payer_user_id
    return None


def parse_clerk_event(payload: Mapping[str, Any], *, svix_timestamp: str | None = None) -> WebhookEvent:
    event_type = str(payload.get("type") or "")
    data = payload.get("data")
    if not isinstance(data, Mapping):
        data = {}
    if not is_relevant_clerk_event(event_type):
        return WebhookEvent(
            provider=PROVIDER_CLERK,
            event_type=event_type,
            action=WebhookAction.IGNORE,
            subscriber_id=None,
            subscription_id=None,
            status=None,
        )
    if event_type.startswith("subscriptionItem."):
        subscription_id = _clean_str(_pick(data, "subscription_id", "subscriptionId")) or _clean_str(data.get("id"))
    else:
        subscription_id = _clean_str(data.get("id"))
    updated_at = _pick(data, "updated_at", "updatedAt")
    if updated_at is None and svix_timestamp:
        updated_at = svix_timestamp
    return WebhookEvent(
        provider=PROVIDER_CLERK,
        event_type=event_type,
        action=WebhookAction.UPSERT,
        subscriber_id=resolve_clerk_subscriber_id(event_type, data),
        subscription_id=subscription_id,
        status=_clean_str(data.get("status")),
        raw_timestamp=updated_at,
    )


def select_primary_item(items: list[Mapping[str, Any]] | None) -> Mapping[str, Any] | None:
    # Prefer an item that currently grants access; otherwise fall back to the first item.
    if not items:
        return None
    for item in items:
        if _pick(item, "status") in _CLERK_PRIMARY_ITEM_STATUSES:
            return item
    return items[0]


def clerk_snapshot_from_subscription(subscription: Mapping[str, Any]) -> SubscriptionSnapshot | None:
    """Build the stored snapshot from the provider's current subscription.

    Returns None when the subscription has no items, which callers treat as
    "no subscription" and clear the subscriber's record.
    """
    items = _pick(subscription, "subscription_items", "subscriptionItems") or []
    primary = select_primary_item(list(items))
    if primary is None:
        return None
    plan = _pick(primary, "plan")
    features: list[str] = []
    for feature in _pick(plan, "features") or []:
        slug = _clean_str(_pick(feature, "slug"))
        if slug:
            features.append(slug)
    amount = _pick(primary, "amount")
    is_free_trial = bool(_pick(primary, "is_free_trial", "isFreeTrial"))
    period_start = _optional_ms(_pick(primary, "period_start", "periodStart"))
    period_end = _optional_ms(_pick(primary, "period_end", "periodEnd"))
    return SubscriptionSnapshot(
        subscription_id=_clean_str(subscription.get("id")),
        status=_clean_str(subscription.get("status")),
        subscription_item_id=_clean_str(primary.get("id")),
        plan_identifier=_clean_str(_pick(plan, "id")) or _clean_str(_pick(primary, "plan_id", "planId")),
        plan_slug=_clean_str(_pick(plan, "slug")),
        plan_name=_clean_str(_pick(plan, "name")),
        billing_period=_clean_str(_pick(primary, "plan_period", "planPeriod")),
        amount_minor_units=_optional_int(_pick(amount, "amount")),
        currency=_clean_str(_pick(amount, "currency")),
        granted_features=tuple(features),
        trial_start_ms=period_start if is_free_trial else None,
        trial_end_ms=period_end if is_free_trial else None,
        is_trial_active=is_free_trial,
        current_period_end_ms=period_end,
    )


# --- Polar ---

POLAR_STATUS_MAP: dict[str, str] = {
    "active": "active",
    "canceled": "canceled",
    "incomplete": "incomplete",
    "incomplete_expired": "canceled",
    "past_due": "past_due",
    "unpaid": "unpaid",
    "trialing": "active",
}

_POLAR_ACTIONS: dict[str, WebhookAction] = {
    "subscription.created": WebhookAction.UPSERT,
    "subscription.updated": WebhookAction.UPSERT,
    "subscription.active": WebhookAction.UPSERT,
    "subscription.uncanceled": WebhookAction.UNCANCEL,
    "subscription.canceled": WebhookAction.CANCEL,
    "subscription.revoked": WebhookAction.REVOKE,
}

# Actions that write the full snapshot and therefore need every critical field.
_POLAR_SNAPSHOT_ACTIONS = (WebhookAction.UPSERT, WebhookAction.UNCANCEL)


def extract_polar_user_id(metadata: Any) -> str | None:
    if not isinstance(metadata, Mapping):
        return None
    return _clean_str(metadata.get("userId"))


def mask_metadata(metadata: Any) -> dict[str, Any]:
    # Never log or persist the raw subscriber id carried in provider metadata.
    if not isinstance(metadata, Mapping):
        return {}
    masked = {key: value for key, value in metadata.items() if key != "userId"}
    if metadata.get("userId"):
        masked["userId"] = "***"
    return masked


def map_polar_status(status: str | None, *, subscription_id: str | None = None) -> str:
    mapped = POLAR_STATUS_MAP.get(status or "")
    if mapped is None:
        logger.error(
            "polar_status_unmapped status=%s subscription_id=%s", status, subscription_id or "<missing>"
        )
        raise UnknownSubscriptionStatusError(
            f'Unhandled Polar subscription status "{status}" for subscription {subscription_id or "<missing id>"}'
        )
    return mapped


def missing_polar_fields(data: Mapping[str, Any]) -> list[str]:
    missing: list[str] = []
    if not _clean_str(data.get("id")):
        missing.append("id")
    if not _clean_str(_pick(data, "customer_id", "customerId")):
        missing.append("customer_id")
    if not _clean_str(_pick(data, "product_id", "productId")):
        missing.append("product_id")
    if not isinstance(data.get("status"), str) or not data.get("status"):
        missing.append("status")
    return missing


def parse_polar_event(payload: Mapping[str, Any]) -> WebhookEvent:
    """Normalize a verified Polar subscription webhook.

    Status mapping happens here so an unknown status fails before the
    delivery is recorded, leaving the provider free to retry it.
    """
    event_type = str(payload.get("type") or "")
    data = payload.get("data")
    if not isinstance(data, Mapping):
        data = {}
    action = _POLAR_ACTIONS.get(event_type, WebhookAction.IGNORE)
    metadata = data.get("metadata")
    subscription_id = _clean_str(data.get("id"))
    raw_status = data.get("status") if isinstance(data.get("status"), str) else None
    event = WebhookEvent(
        provider=PROVIDER_POLAR,
        event_type=event_type,
        action=action,
        subscriber_id=extract_polar_user_id(metadata),
        subscription_id=subscription_id,
        status=raw_status,
        raw_timestamp=_pick(data, "modified_at", "modifiedAt", "updated_at", "updatedAt"),
        reset_usage=event_type in ("subscription.active", "subscription.revoked"),
        masked_metadata=mask_metadata(metadata),
    )
    if action not in _POLAR_SNAPSHOT_ACTIONS:
        return event

    missing = missing_polar_fields(data)
    if missing:
        logger.error(
            "polar_subscription_missing_fields subscription_id=%s missing=%s",
            subscription_id,
            ",".join(missing),
        )
        return replace(event, action=WebhookAction.IGNORE, reset_usage=False)

    product = data.get("product")
    product_name = _clean_str(_pick(product, "name")) or "Pro"
    snapshot = SubscriptionSnapshot(
        subscription_id=subscription_id,
        status=map_polar_status(raw_status, subscription_id=subscription_id),
        plan_identifier=_clean_str(_pick(data, "product_id", "productId")),
        plan_name=product_name,
        billing_period=_clean_str(_pick(data, "recurring_interval", "recurringInterval")),
        amount_minor_units=_optional_int(data.get("amount")),
        currency=_clean_str(data.get("currency")),
        current_period_end_ms=_optional_ms(_pick(data, "current_period_end", "currentPeriodEnd")),
        cancel_at_period_end=bool(_pick(data, "cancel_at_period_end", "cancelAtPeriodEnd")),
        metadata={
            "customer_id": _clean_str(_pick(data, "customer_id", "customerId")),
            **event.masked_metadata,
        },
    )
    return replace(event, snapshot=snapshot)
