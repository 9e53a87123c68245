"""Cron entry point: expire overdue handoff claims and purge old terminal rows.

Usage: python scripts/sweep_pending_claims.py [--retention-hours N]
"""

import argparse
import asyncio
import logging
import os
import sys

# Add parent dir to path to find the app modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker, engine  # noqa: E402
from services.pending_claims import expire_stale_claims  # noqa: E402


async def sweep(retention_hours=None) -> int:
    async with async_session_maker() as db:
        result = await expire_stale_claims(db, retention_hours=retention_hours)
    await engine.dispose()
    print(
        f"🧹 Swept pending claims: expired={result.expired_count} "
        f"deleted={result.deleted_count} by_provider={result.expired_by_provider}"
    )
    return result.expired_count


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire stale pending handoff claims.")
    parser.add_argument("--retention-hours", type=int, default=None)
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    asyncio.run(sweep(args.retention_hours))


if __name__ == "__main__":
    main()
