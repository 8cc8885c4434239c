from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Literal

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.config import get_settings
from tollgate.domain.models import ProcessedWebhookEvent
from tollgate.services.ai_rate_limit import AiRateLimitService, get_ai_rate_limit_service


logger = logging.getLogger(__name__)


MaintenanceTask = Literal[
    "prune_ai_rate_limits",
    "prune_webhook_events",
]

MAINTENANCE_TASKS: tuple[MaintenanceTask, ...] = ("prune_ai_rate_limits", "prune_webhook_events")


async def prune_ai_rate_limits(
    session: AsyncSession,
    *,
    service: AiRateLimitService | None = None,
) -> int:
    # Drop rate limit windows past the retention horizon; stale rows only bloat usage queries.
    result = await (service or get_ai_rate_limit_service()).cleanup(session=session)
    return result.deleted


async def prune_webhook_events(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove ledger rows long after any provider would redeliver them.
    settings = get_settings()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=settings.webhook_ledger_retention_days)
    result = await session.execute(
        delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < cutoff)
    )
    deleted = result.rowcount or 0
    logger.info("webhook_ledger_pruned deleted=%s", deleted)
    return deleted


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    if task == "prune_ai_rate_limits":
        return await prune_ai_rate_limits(session)
    if task == "prune_webhook_events":
        return await prune_webhook_events(session)
    raise ValueError(f"unknown_maintenance_task:{task}")


async def run_all_maintenance(session: AsyncSession) -> dict[str, int]:
    # Run every sweep in one transaction owned by the caller.
    counts: dict[str, int] = {}
    for task in MAINTENANCE_TASKS:
        counts[task] = await run_maintenance_task(session, task)
    return counts
