from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta

from shipbridge.core.timeutils import utc_now
from shipbridge.persistence.db import get_session
from shipbridge.persistence.repos import idempotency as idempotency_repo


async def prune(grace_hours: int) -> None:
    # Records that expired within the grace window are kept.
    cutoff = utc_now() - timedelta(hours=grace_hours)
    async with get_session() as session:
        deleted = await idempotency_repo.prune_expired(session, now=cutoff)
        print(f"pruned_idempotency_records={deleted} cutoff={cutoff.isoformat()}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete expired idempotency records.")
    parser.add_argument("--grace-hours", type=int, default=0)
    args = parser.parse_args()
    asyncio.run(prune(args.grace_hours))


if __name__ == "__main__":
    main()
