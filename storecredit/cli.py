# FILE: storecredit/cli.py
"""
Cleanup abandoned checkouts.

    storecredit-cleanup            # older than 24 hours
    storecredit-cleanup 48         # older than 48 hours
    storecredit-cleanup 1 --expired-reservations
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from storecredit.core.config import Settings
from storecredit.core.database import build_engine, init_models
from storecredit.core.logging_config import setup_logging
from storecredit.server import build_services

logger = logging.getLogger("storecredit.cli")

DEFAULT_MAX_AGE_HOURS = 24


def parse_max_age(raw: Optional[str]) -> int:
    """Anything that is not a positive integer falls back to the default."""
    try:
        hours = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_MAX_AGE_HOURS
    return hours if hours > 0 else DEFAULT_MAX_AGE_HOURS


async def run_cleanup(settings: Settings, max_age_hours: int, expired_reservations: bool = False) -> int:
    engine = build_engine(settings.database_url)
    try:
        await init_models(engine)
        services = build_services(settings, engine)

        print(f"Looking for abandoned checkouts older than {max_age_hours} hours")
        result = await services.reclamation.cleanup_abandoned_checkouts(max_age_hours)
        if not result.success:
            print(f"Cleanup failed: {result.error}", file=sys.stderr)
            return 1

        print(f"Total credits restored: ${result.total_restored:.2f}")
        print(f"Sessions processed: {result.restored_sessions}")
        print(result.message)
        if result.failed_sessions:
            print(f"Failed sessions (retried next run): {', '.join(result.failed_sessions)}")

        if expired_reservations:
            expired = await services.reclamation.cleanup_expired_reservations(max_age_hours)
            if not expired.success:
                print(f"Expired reservation cleanup failed: {expired.error}", file=sys.stderr)
                return 1
            print(expired.message)
        return 0
    finally:
        await engine.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="storecredit-cleanup", description="Restore credits held by abandoned checkouts")
    parser.add_argument("max_age_hours", nargs="?", default=None, help="age cutoff in hours (default 24)")
    parser.add_argument("--expired-reservations", action="store_true", help="also delete stale credit reservations")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_dir)
    max_age_hours = parse_max_age(args.max_age_hours)

    try:
        return asyncio.run(run_cleanup(settings, max_age_hours, args.expired_reservations))
    except KeyboardInterrupt:
        print("Cleanup interrupted")
        return 0
    except Exception as exc:
        logger.exception("Fatal error during cleanup")
        print(f"Fatal error during cleanup: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
