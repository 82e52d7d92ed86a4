#!/usr/bin/env python3
"""
Sync every user whose last sync is older than the batch interval.

Meant to be run from cron. Reconciliation runs inline, one user at a time.

Usage:
    python src/scripts/run_batch_sync.py
    python src/scripts/run_batch_sync.py --interval 120 --pause 5
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.config import BATCH_SYNC_INTERVAL_MINUTES, BATCH_USER_DELAY_SECONDS, DB_PATH, LOG_LEVEL
from core.crypto import CredentialCipher
from core.database import RosterStore, UserDirectory, create_schema, get_connection
from services.sync import SyncOrchestrator


async def run(interval: int, pause: float) -> int:
    conn = get_connection(DB_PATH)
    try:
        create_schema(conn)
        orchestrator = SyncOrchestrator(RosterStore(conn), UserDirectory(conn, CredentialCipher()))
        results = await orchestrator.run_batch_sync(interval_minutes=interval, pause_seconds=pause)
    finally:
        conn.close()

    failures = 0
    for item in results:
        detail = item.get("reason") or item.get("message") or item.get("error") or ""
        print(f"  {item['user']:<20} {item['status']:<8} {detail}")
        if item["status"] in ("failed", "error"):
            failures += 1

    print(f"\nProcessed {len(results)} users, {failures} failed")
    return 1 if failures else 0


def main():
    parser = argparse.ArgumentParser(description="Batch roster sync for all users")
    parser.add_argument(
        "--interval",
        type=int,
        default=BATCH_SYNC_INTERVAL_MINUTES,
        help=f"Minimum minutes since a user's last sync (default: {BATCH_SYNC_INTERVAL_MINUTES})",
    )
    parser.add_argument(
        "--pause",
        type=float,
        default=BATCH_USER_DELAY_SECONDS,
        help=f"Seconds to wait between users (default: {BATCH_USER_DELAY_SECONDS})",
    )
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    print(f"Batch sync (interval {args.interval} min, database {DB_PATH})\n")
    sys.exit(asyncio.run(run(args.interval, args.pause)))


if __name__ == "__main__":
    main()
