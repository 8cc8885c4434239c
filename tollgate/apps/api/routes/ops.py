from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.apps.api.deps import get_db, require_ops_token
from tollgate.services.maintenance import run_all_maintenance


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_ops_token)])


class MaintenanceCleanupResponse(BaseModel):
    ok: bool
    pruned: dict[str, int]


@router.post("/maintenance/cleanup", response_model=MaintenanceCleanupResponse)
async def maintenance_cleanup(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    # Same sweeps the worker cron runs, for operators who need them now.
    counts = await run_all_maintenance(db)
    await db.commit()
    logger.info("maintenance_cleanup_requested pruned=%s", counts)
    return {"ok": True, "pruned": counts}
