from __future__ import annotations

import asyncio

from tollgate.core.logging import configure_logging
from tollgate.persistence.db import SessionLocal
from tollgate.services.maintenance import prune_ai_rate_limits


async def prune() -> None:
    configure_logging()
    async with SessionLocal() as session:
        deleted = await prune_ai_rate_limits(session)
        await session.commit()
        print(f"pruned_ai_rate_limit_states={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
