from __future__ import annotations

import argparse
import asyncio

from tollgate.core.logging import configure_logging
from tollgate.persistence.db import SessionLocal
from tollgate.services.billing_provider import get_billing_provider_client
from tollgate.services.webhooks.resync import resync_subscriber


async def _reconcile(subscriber_ids: list[str]) -> None:
    configure_logging()
    billing = get_billing_provider_client()
    async with SessionLocal() as session:
        for subscriber_id in subscriber_ids:
            outcome = await resync_subscriber(session=session, subscriber_id=subscriber_id, billing=billing)
            print(f"subscriber_id={subscriber_id} outcome={outcome.status}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-apply provider subscription state for subscribers")
    parser.add_argument("subscriber_ids", nargs="+")
    args = parser.parse_args()
    asyncio.run(_reconcile(args.subscriber_ids))


if __name__ == "__main__":
    main()
