#!/usr/bin/env python3
"""Delete expired email tokens, refresh tokens and stale login attempts.

The services never delete token rows themselves; run this from cron.

Usage:
    # Purge everything that expired more than a day ago:
    DATABASE_URL=postgresql://... python scripts/purge_expired_tokens.py

    # Keep a week of expired rows for auditing:
    python scripts/purge_expired_tokens.py --grace-hours 168

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (memory store if USE_MEMORY_STORE=true)
    SHARED_FS_ROOT: Memory store state directory
"""
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(grace_hours: int) -> dict:
    """Purge rows that expired more than ``grace_hours`` ago.

    Returns:
        dict of table name to number of rows deleted
    """
    # Import here to avoid loading config before env vars are set
    from sessionguard.config import get_settings
    from sessionguard.storage.memory import MemoryStore
    from sessionguard.storage.postgres import PostgresStore

    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(hours=grace_hours)
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root).purge_expired(cutoff)
    store = PostgresStore(settings.database_url, min_size=1, max_size=1)
    try:
        return store.purge_expired(cutoff)
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired sessionguard tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--grace-hours",
        type=int,
        default=24,
        help="Only delete rows that expired at least this many hours ago (default: 24)",
    )
    args = parser.parse_args()

    if args.grace_hours < 0:
        print("Error: --grace-hours must not be negative")
        sys.exit(1)

    try:
        counts = purge(args.grace_hours)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for table, deleted in sorted(counts.items()):
        print(f"  {table}: {deleted} deleted")


if __name__ == "__main__":
    main()
