from __future__ import annotations

import asyncio

from tollgate.core.logging import configure_logging
from tollgate.persistence.db import SessionLocal
from tollgate.services.maintenance import prune_webhook_events


async def prune() -> None:
    configure_logging()
    async with SessionLocal() as session:
        deleted = await prune_webhook_events(session)
        await session.commit()
        print(f"pruned_processed_webhook_events={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
