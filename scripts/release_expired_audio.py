#!/usr/bin/env python3
"""Release stored audio of jobs past the retention period.

Usage:
    python scripts/release_expired_audio.py
    python scripts/release_expired_audio.py --days 7

Deletes the compressed recording of every terminal job last updated more
than AUDIO_RETENTION_DAYS ago (or --days) and clears its audio_ref. Such
jobs can no longer be reprocessed.

Reads DATABASE_URL and AUDIO_STORAGE_DIR from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

logger = structlog.get_logger(__name__)


async def main_async(args: argparse.Namespace) -> None:
    from src.scribe.audio.storage import AudioStore
    from src.scribe.config import get_settings
    from src.scribe.core.database import close_db, get_session
    from src.scribe.jobs.repository import JobRepository
    from src.scribe.jobs.retention import AudioRetention

    settings = get_settings()
    days = args.days if args.days is not None else settings.AUDIO_RETENTION_DAYS
    if days < 1:
        print("Error: --days must be at least 1")
        sys.exit(1)

    retention = AudioRetention(
        JobRepository(get_session),
        AudioStore(settings.AUDIO_STORAGE_DIR),
        retention_days=days,
    )
    try:
        released = await retention.release_expired(datetime.now(timezone.utc))
    finally:
        await close_db()

    logger.info("Retention sweep finished", released=released, retention_days=days)
    print(f"Released audio for {released} job(s)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Release audio of jobs past retention")
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention period in days (defaults to AUDIO_RETENTION_DAYS)",
    )
    args = parser.parse_args()

    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
