from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
import time
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.config import get_settings
from tollgate.core.errors import RateLimitExceeded
from tollgate.domain.models import AiRateLimitState
from tollgate.persistence.db import supports_row_locks
from tollgate.services.tiers import SubscriptionTier, TierLimits, limits_for_tier, resolve_tier


logger = logging.getLogger(__name__)

KIND_COUNT_EXCEEDED = "count_exceeded"
KIND_COST_EXCEEDED = "cost_exceeded"
KIND_BURST_EXCEEDED = "burst_exceeded"

_HOUR_MS = 60 * 60 * 1000
_DAY_MS = 24 * _HOUR_MS

_COST_PRECISION = 6


@dataclass(frozen=True)
class RateLimitDecision:
    # Outcome of an admission check; cost_remaining None means the tier has no cost ceiling.
    allowed: bool
    remaining: int
    reset_at_ms: int
    cost_remaining: float | None
    reason: str | None = None
    kind: str | None = None
    retry_after_ms: int = 0


@dataclass(frozen=True)
class UsageBucket:
    requests: int
    tokens: int
    cost: float


@dataclass(frozen=True)
class UsageStats:
    hourly: UsageBucket
    daily: UsageBucket


@dataclass(frozen=True)
class CleanupResult:
    deleted: int


def state_key(subscriber_id: str, operation: str) -> str:
    # Composite identity for the one state row per subscriber/operation pair.
    return f"ai_rate_{subscriber_id}_{operation}"


def _round_cost(value: float) -> float:
    # Round accumulated dollar amounts to bound binary float drift across many additions.
    return round(value, _COST_PRECISION)


def _window_seconds(limits: TierLimits) -> str:
    return f"{limits.window_duration_ms / 1000:g}s"


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


def window_expired(state: AiRateLimitState, limits: TierLimits, now_ms: int) -> bool:
    # Windows are fixed and reset wholesale once strictly older than their duration.
    return now_ms - state.window_start_ms > limits.window_duration_ms


def evaluate_request(
    *,
    state: AiRateLimitState | None,
    limits: TierLimits,
    operation: str,
    now_ms: int,
    estimated_cost: float = 0.0,
) -> RateLimitDecision:
    """Decide whether one more request fits the subscriber's current window.

    Checks run in a fixed order: request count, cost ceiling, then burst
    spacing. A fresh or expired window always admits on count and burst, but a
    request whose own cost exceeds the per-window ceiling is refused because no
    window could ever hold it.
    """
    estimated_cost = max(float(estimated_cost or 0.0), 0.0)
    cost_limit = limits.cost_limit

    if state is None or window_expired(state, limits, now_ms):
        reset_at_ms = now_ms + limits.window_duration_ms
        if cost_limit is not None and _round_cost(estimated_cost) > cost_limit:
            return RateLimitDecision(
                allowed=False,
                remaining=limits.max_requests,
                reset_at_ms=reset_at_ms,
                cost_remaining=cost_limit,
                reason=(
                    "AI cost limit would be exceeded. "
                    f"Current: $0.00, Requested: ${estimated_cost:.2f}, "
                    f"Limit: ${cost_limit:.2f} per {_window_seconds(limits)}"
                ),
                kind=KIND_COST_EXCEEDED,
                retry_after_ms=limits.window_duration_ms,
            )
        return RateLimitDecision(
            allowed=True,
            remaining=max(limits.max_requests - 1, 0),
            reset_at_ms=reset_at_ms,
            cost_remaining=None if cost_limit is None else _round_cost(cost_limit - estimated_cost),
        )

    reset_at_ms = state.window_start_ms + limits.window_duration_ms
    until_reset_ms = max(reset_at_ms - now_ms, 0)
    current_cost = float(state.total_cost or 0.0)
    cost_remaining = None if cost_limit is None else _round_cost(max(cost_limit - current_cost, 0.0))

    if state.request_count >= limits.max_requests:
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            reset_at_ms=reset_at_ms,
            cost_remaining=cost_remaining,
            reason=(
                f"AI rate limit exceeded for {operation}. "
                f"Limit: {limits.max_requests} requests per {_window_seconds(limits)}. "
                f"Reset at: {_iso(reset_at_ms)}"
            ),
            kind=KIND_COUNT_EXCEEDED,
            retry_after_ms=until_reset_ms,
        )

    remaining_requests = limits.max_requests - state.request_count
    projected_cost = _round_cost(current_cost + estimated_cost)
    if cost_limit is not None and projected_cost > cost_limit:
        return RateLimitDecision(
            allowed=False,
            remaining=remaining_requests,
            reset_at_ms=reset_at_ms,
            cost_remaining=cost_remaining,
            reason=(
                "AI cost limit would be exceeded. "
                f"Current: ${current_cost:.2f}, Requested: ${estimated_cost:.2f}, "
                f"Limit: ${cost_limit:.2f} per {_window_seconds(limits)}"
            ),
            kind=KIND_COST_EXCEEDED,
            retry_after_ms=until_reset_ms,
        )

    if limits.burst_allowance is not None and state.request_count > limits.burst_allowance:
        min_interval_ms = limits.min_interval_ms
        since_last_ms = now_ms - state.last_request_at_ms
        if since_last_ms < min_interval_ms:
            wait_ms = int(math.ceil(min_interval_ms - since_last_ms))
            return RateLimitDecision(
                allowed=False,
                remaining=remaining_requests,
                reset_at_ms=now_ms + wait_ms,
                cost_remaining=cost_remaining,
                reason=(
                    "AI burst limit exceeded. "
                    f"Please wait {int(math.ceil(min_interval_ms / 1000))}s between requests."
                ),
                kind=KIND_BURST_EXCEEDED,
                retry_after_ms=wait_ms,
            )

    return RateLimitDecision(
        allowed=True,
        remaining=max(remaining_requests - 1, 0),
        reset_at_ms=reset_at_ms,
        cost_remaining=None if cost_limit is None else _round_cost(max(cost_limit - projected_cost, 0.0)),
    )


def _exceeded(decision: RateLimitDecision, operation: str) -> RateLimitExceeded:
    return RateLimitExceeded(
        kind=decision.kind or KIND_COUNT_EXCEEDED,
        operation=operation,
        reset_at_ms=decision.reset_at_ms,
        retry_after_ms=decision.retry_after_ms,
        detail=decision.reason or "AI rate limit exceeded",
        cost_remaining=decision.cost_remaining,
    )


class AiRateLimitService:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        # Allow injecting time (epoch seconds) for deterministic window tests.
        self._time_provider = time_provider or time.time

    def _now_ms(self) -> int:
        return int(round(self._time_provider() * 1000))

    async def _load_state(
        self,
        session: AsyncSession,
        key: str,
        *,
        for_update: bool,
    ) -> AiRateLimitState | None:
        stmt = select(AiRateLimitState).where(AiRateLimitState.key == key)
        if for_update and supports_row_locks(session):
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def check_allowed(
        self,
        *,
        session: AsyncSession,
        subscriber_id: str,
        operation: str,
        tier: str | SubscriptionTier | None,
        estimated_cost: float | None = None,
    ) -> RateLimitDecision:
        # Pre-flight decision for UI checks; never mutates state.
        limits = limits_for_tier(tier)
        state = await self._load_state(session, state_key(subscriber_id, operation), for_update=False)
        return evaluate_request(
            state=state,
            limits=limits,
            operation=operation,
            now_ms=self._now_ms(),
            estimated_cost=estimated_cost or 0.0,
        )

    async def enforce(
        self,
        *,
        session: AsyncSession,
        subscriber_id: str,
        operation: str,
        tier: str | SubscriptionTier | None,
        estimated_cost: float = 0.0,
        tokens: int = 0,
    ) -> RateLimitDecision:
        """Admit one costed AI operation or raise ``RateLimitExceeded``.

        Must run immediately before the costed call. State is consumed only
        when the request is admitted.
        """
        resolved = resolve_tier(tier)
        limits = limits_for_tier(resolved)
        try:
            decision = await self._enforce_once(
                session=session,
                subscriber_id=subscriber_id,
                operation=operation,
                limits=limits,
                estimated_cost=estimated_cost,
                tokens=tokens,
            )
        except IntegrityError:
            # A concurrent first request inserted the row; re-run against the stored state.
            logger.info(
                "ai_rate_limit_insert_race subscriber_id=%s operation=%s", subscriber_id, operation
            )
            decision = await self._enforce_once(
                session=session,
                subscriber_id=subscriber_id,
                operation=operation,
                limits=limits,
                estimated_cost=estimated_cost,
                tokens=tokens,
            )

        if not decision.allowed:
            logger.warning(
                "ai_rate_limit_denied subscriber_id=%s operation=%s tier=%s kind=%s retry_after_ms=%s",
                subscriber_id,
                operation,
                resolved.value,
                decision.kind,
                decision.retry_after_ms,
            )
            raise _exceeded(decision, operation)
        return decision

    async def _enforce_once(
        self,
        *,
        session: AsyncSession,
        subscriber_id: str,
        operation: str,
        limits: TierLimits,
        estimated_cost: float,
        tokens: int,
    ) -> RateLimitDecision:
        now_ms = self._now_ms()
        key = state_key(subscriber_id, operation)
        cost = max(float(estimated_cost or 0.0), 0.0)
        token_count = max(int(tokens or 0), 0)

        in_transaction = session.in_transaction()
        # Use a nested transaction when prior reads have already opened one.
        tx_context = session.begin_nested() if in_transaction else session.begin()
        async with tx_context:
            state = await self._load_state(session, key, for_update=True)
            decision = evaluate_request(
                state=state,
                limits=limits,
                operation=operation,
                now_ms=now_ms,
                estimated_cost=cost,
            )
            if decision.allowed:
                if state is None:
                    session.add(
                        AiRateLimitState(
                            key=key,
                            subscriber_id=subscriber_id,
                            operation=operation,
                            request_count=1,
                            total_cost=_round_cost(cost),
                            tokens_consumed=token_count,
                            window_start_ms=now_ms,
                            last_request_at_ms=now_ms,
                        )
                    )
                elif window_expired(state, limits, now_ms):
                    state.request_count = 1
                    state.total_cost = _round_cost(cost)
                    state.tokens_consumed = token_count
                    state.window_start_ms = now_ms
                    state.last_request_at_ms = now_ms
                else:
                    state.request_count = state.request_count + 1
                    state.total_cost = _round_cost(float(state.total_cost or 0.0) + cost)
                    state.tokens_consumed = int(state.tokens_consumed or 0) + token_count
                    state.last_request_at_ms = now_ms
                await session.flush()

        if in_transaction:
            # Commit counters when we piggyback on an existing transaction.
            await session.commit()
        return decision

    async def get_usage_stats(self, *, session: AsyncSession, subscriber_id: str) -> UsageStats:
        # Aggregate across operations, bucketed by when each record's window started.
        now_ms = self._now_ms()
        hour_cutoff = now_ms - _HOUR_MS
        day_cutoff = now_ms - _DAY_MS
        result = await session.execute(
            select(AiRateLimitState).where(AiRateLimitState.subscriber_id == subscriber_id)
        )
        records = result.scalars().all()
        hourly = [row for row in records if row.window_start_ms > hour_cutoff]
        daily = [row for row in records if row.window_start_ms > day_cutoff]
        return UsageStats(hourly=_bucket(hourly), daily=_bucket(daily))

    async def cleanup(self, *, session: AsyncSession) -> CleanupResult:
        # Drop state whose window started before the retention horizon; caller commits.
        settings = get_settings()
        cutoff = self._now_ms() - settings.ai_rl_retention_ms
        result = await session.execute(
            delete(AiRateLimitState).where(AiRateLimitState.window_start_ms < cutoff)
        )
        deleted = int(result.rowcount or 0)
        logger.info("ai_rate_limit_cleanup deleted=%s cutoff_ms=%s", deleted, cutoff)
        return CleanupResult(deleted=deleted)


def _bucket(rows: list[AiRateLimitState]) -> UsageBucket:
    return UsageBucket(
        requests=sum(int(row.request_count or 0) for row in rows),
        tokens=sum(int(row.tokens_consumed or 0) for row in rows),
        cost=_round_cost(sum(float(row.total_cost or 0.0) for row in rows)),
    )


_ai_rate_limit_service: AiRateLimitService | None = None


def get_ai_rate_limit_service() -> AiRateLimitService:
    # Cache the service so request handlers share one time provider.
    global _ai_rate_limit_service
    if _ai_rate_limit_service is None:
        _ai_rate_limit_service = AiRateLimitService()
    return _ai_rate_limit_service


def reset_ai_rate_limit_service() -> None:
    # Reset cached services for deterministic tests.
    global _ai_rate_limit_service
    _ai_rate_limit_service = None
