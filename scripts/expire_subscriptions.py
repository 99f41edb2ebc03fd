from __future__ import annotations

import asyncio
import sys

from botforge.core.logging import configure_logging
from botforge.persistence.db import SessionLocal
from botforge.services.subscriptions import get_subscription_service


async def _run() -> int:
    # Writes the advisory expired status; enforcement never waits on this job.
    async with SessionLocal() as session:
        count = await get_subscription_service().mark_expired_subscriptions(session)
    print(f"subscriptions marked expired: {count}")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(_run())
    except Exception as exc:  # noqa: BLE001 - surface housekeeping failures clearly
        print(f"expire_subscriptions failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
