from __future__ import annotations

import argparse
import asyncio

from shipbridge.core.config import get_settings
from shipbridge.core.logging import configure_logging
from shipbridge.workers.webhook_worker import load_processor_factory


async def replay(provider: str | None, limit: int) -> None:
    # Re-run failed webhook events with the same processor the worker uses.
    configure_logging()
    processor = load_processor_factory(get_settings().webhook_processor_factory)()
    recovered = await processor.replay_failed(provider=provider, limit=limit)
    print(f"replayed_webhook_events_recovered={recovered}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay failed webhook events.")
    parser.add_argument("--provider", default=None)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()
    asyncio.run(replay(args.provider, args.limit))


if __name__ == "__main__":
    main()
