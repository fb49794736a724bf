#!/usr/bin/env python3
"""Delete refresh sessions that were revoked longer ago than the retention window.

The API process runs the same sweep periodically; use this from cron when that
loop is disabled (REFRESH_PURGE_INTERVAL_SECONDS=0).

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_refresh_sessions.py
    python scripts/purge_refresh_sessions.py --database-url postgresql://... --retention-days 14

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REFRESH_RETENTION_DAYS: Default retention window (30)
    STORAGE_TIMEOUT_SECONDS: Connect/statement timeout (5)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(database_url: str, retention_days: int, timeout_seconds: float) -> int:
    from marketauth.service.sessions import RefreshSessionStore
    from marketauth.storage.postgres import PostgresStore

    store = PostgresStore(database_url, timeout_seconds=timeout_seconds)
    try:
        return RefreshSessionStore(store).purge_older_than(retention_days)
    finally:
        store.close()


def main():
    from marketauth.config import Settings
    from marketauth.storage.errors import StorageUnavailable

    settings = Settings.from_env()
    parser = argparse.ArgumentParser(
        description="Purge revoked refresh sessions past the retention window",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="Postgres DSN (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.refresh_retention_days,
        help="Keep revoked sessions newer than this many days",
    )
    args = parser.parse_args()

    if args.retention_days < 0:
        print("Error: --retention-days must be zero or positive")
        sys.exit(1)

    try:
        purged = purge(args.database_url, args.retention_days, settings.storage_timeout_seconds)
    except StorageUnavailable as e:
        print(f"Error: database unavailable ({e.operation}); retry later")
        sys.exit(2)

    print(f"Purged {purged} revoked refresh session(s) older than {args.retention_days} day(s)")


if __name__ == "__main__":
    main()
