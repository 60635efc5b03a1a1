"""
Verification Queue Maintenance

Inspect, drain or clear the offline verification queue of a deployment
without going through the HTTP API. Uses the same settings (.env) as the
running service.

Usage:
    python scripts/verification_queue.py list
    python scripts/verification_queue.py abandoned
    python scripts/verification_queue.py drain
    python scripts/verification_queue.py clear
"""

import argparse
import asyncio

from enrollment_sync.core.config import settings
from enrollment_sync.core.database import async_session_maker, close_db, init_db
from enrollment_sync.core.redis import close_redis, init_redis
from enrollment_sync.modules.local_state import RedisStateStore, SqlStateStore, StateStore
from enrollment_sync.services import build_services


async def open_store() -> StateStore:
    if settings.state_store_backend == "redis":
        return RedisStateStore(await init_redis())
    await init_db()
    return SqlStateStore(async_session_maker)


async def run(command: str) -> None:
    """Run one maintenance command against the configured store."""
    store = await open_store()
    services = build_services(settings, store)

    try:
        if command == "list":
            items = await services.queue.list()
            print(f"{len(items)} queued verification(s)")
            for item in items:
                code_type = item.code_type.value if item.code_type else "-"
                print(
                    f"  {item.id}  {item.code}  {code_type}  "
                    f"retries={item.retry_count}  last_error={item.last_error}"
                )

        elif command == "abandoned":
            items = await services.queue.list_abandoned()
            print(f"{len(items)} abandoned verification(s)")
            for item in items:
                print(f"  {item.id}  {item.code}  last_error={item.last_error}")

        elif command == "drain":
            await services.monitor.restore()
            health = await services.monitor.check_health()
            print(f"Verification service: {health.status.value} - {health.message}")
            summary = await services.coordinator.drain_queue()
            print(
                f"Drain finished: processed={summary.processed} "
                f"successful={summary.successful} failed={summary.failed} "
                f"abandoned={summary.abandoned} skipped={summary.skipped}"
            )
            for error in summary.errors:
                print(f"  error: {error}")

        elif command == "clear":
            removed = await services.queue.clear()
            print(f"Removed {removed} queued verification(s)")

    finally:
        await services.coordinator.aclose()
        await close_redis()
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Offline verification queue maintenance")
    parser.add_argument("command", choices=["list", "abandoned", "drain", "clear"])
    args = parser.parse_args()
    asyncio.run(run(args.command))
