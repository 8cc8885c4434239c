from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from tollgate.core.config import get_settings
from tollgate.core.logging import configure_logging
from tollgate.persistence.db import SessionLocal
from tollgate.services.maintenance import MaintenanceTask, run_all_maintenance, run_maintenance_task

logger = logging.getLogger(__name__)


async def run_maintenance(ctx, task: MaintenanceTask) -> int:
    # Run one sweep on demand when an operator enqueues it by name.
    async with SessionLocal() as session:
        deleted = await run_maintenance_task(session, task)
        await session.commit()
    logger.info("maintenance_task_completed task=%s deleted=%s", task, deleted)
    return deleted


async def scheduled_maintenance(ctx) -> dict[str, int]:
    async with SessionLocal() as session:
        counts = await run_all_maintenance(session)
        await session.commit()
    logger.info("maintenance_sweep_completed pruned=%s", counts)
    return counts


async def _startup(ctx) -> None:
    configure_logging()


def _cron_minutes(interval_minutes: int) -> set[int]:
    interval = min(max(1, int(interval_minutes)), 60)
    return set(range(0, 60, interval))


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.maintenance_queue_name
    functions = [run_maintenance]
    cron_jobs = [
        cron(
            scheduled_maintenance,
            minute=_cron_minutes(settings.maintenance_interval_minutes),
            run_at_startup=True,
        )
    ]
    on_startup = _startup
