from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging

from tollgate.core.config import get_settings
from tollgate.domain.models import SubscriptionRecord


logger = logging.getLogger(__name__)


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class TierLimits:
    # Fixed-window admission limits; None means the dimension is unlimited or disabled.
    window_duration_ms: int
    max_requests: int
    burst_allowance: int | None
    cost_limit: float | None

    @property
    def min_interval_ms(self) -> float:
        # Nominal per-request spacing once the burst allowance is spent.
        return self.window_duration_ms / max(self.max_requests, 1)


# Statuses that still entitle the subscriber to their paid plan.
_ENTITLED_STATUSES = {"active", "past_due"}


def resolve_tier(value: str | SubscriptionTier | None) -> SubscriptionTier:
    # Unknown or missing tiers fall back to the most restrictive tier, never an unrestricted one.
    if isinstance(value, SubscriptionTier):
        return value
    if value:
        normalized = str(value).strip().lower()
        for tier in SubscriptionTier:
            if tier.value == normalized:
                return tier
        logger.warning("unknown_subscription_tier tier=%s fallback=%s", value, SubscriptionTier.FREE.value)
    return SubscriptionTier.FREE


def limits_for_tier(tier: str | SubscriptionTier | None) -> TierLimits:
    # Read thresholds from settings so operators can tune tiers per environment.
    settings = get_settings()
    resolved = resolve_tier(tier)
    if resolved is SubscriptionTier.ENTERPRISE:
        return TierLimits(
            window_duration_ms=settings.ai_rl_enterprise_window_ms,
            max_requests=settings.ai_rl_enterprise_max_requests,
            burst_allowance=settings.ai_rl_enterprise_burst,
            cost_limit=settings.ai_rl_enterprise_cost_limit,
        )
    if resolved is SubscriptionTier.PRO:
        return TierLimits(
            window_duration_ms=settings.ai_rl_pro_window_ms,
            max_requests=settings.ai_rl_pro_max_requests,
            burst_allowance=settings.ai_rl_pro_burst,
            cost_limit=settings.ai_rl_pro_cost_limit,
        )
    return TierLimits(
        window_duration_ms=settings.ai_rl_free_window_ms,
        max_requests=settings.ai_rl_free_max_requests,
        burst_allowance=settings.ai_rl_free_burst,
        cost_limit=settings.ai_rl_free_cost_limit,
    )


def tier_for_subscription(record: SubscriptionRecord | None) -> SubscriptionTier:
    # Derive the paid tier server-side from reconciled subscription state.
    if record is None or record.status not in _ENTITLED_STATUSES:
        return SubscriptionTier.FREE
    # Exact match only: the slug decides when present, the display name only without one.
    # Opaque plan identifiers are never inspected.
    label = record.plan_slug if (record.plan_slug or "").strip() else record.plan_name
    normalized = (label or "").strip().lower()
    for tier in SubscriptionTier:
        if tier.value == normalized:
            return tier
    return SubscriptionTier.FREE
