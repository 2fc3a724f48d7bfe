from __future__ import annotations

import asyncio

from shipbridge.persistence.db import get_session
from shipbridge.persistence.repos import webhook_events as webhook_repo


async def prune() -> None:
    # Drop webhook events past their retention window; expires_at is set at ingest.
    async with get_session() as session:
        deleted = await webhook_repo.prune_expired(session)
        print(f"pruned_webhook_events={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
