#!/usr/bin/env python3
"""
Close time entries left open past the maximum shift length.

Meant to run from cron (every 15 minutes) or as a long-lived worker.

Usage:
    python scripts/run_auto_clockout.py              # apply once
    python scripts/run_auto_clockout.py --dry-run    # report what would be closed
    python scripts/run_auto_clockout.py --loop       # run on every interval boundary
"""
import argparse
import json
import os
import sys
import time

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from jobclock.db import session_scope
from jobclock.logging import setup_logging
from jobclock.models.models import utcnow
from jobclock.services.auto_clockout import next_run_delay, run_auto_clockout_once
from jobclock.services.idempotency import purge_expired

logger = structlog.get_logger("auto_clockout")


def run_once(dry_run: bool, max_shift_hours=None) -> dict:
    with session_scope() as db:
        result = run_auto_clockout_once(db, dry_run=dry_run, max_shift_hours=max_shift_hours)
        if not dry_run:
            purged = purge_expired(db)
            logger.info("idempotency_records_purged", count=purged)
        return result.to_dict()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Auto clock-out sweep")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    parser.add_argument("--loop", action="store_true", help="Keep running on each interval boundary")
    parser.add_argument("--interval", type=int, default=15, help="Loop interval in minutes")
    parser.add_argument("--max-shift-hours", type=float, default=None, help="Override MAX_SHIFT_HOURS")
    args = parser.parse_args(argv)

    setup_logging()
    while True:
        try:
            result = run_once(args.dry_run, args.max_shift_hours)
            print(json.dumps(result, indent=2))
        except Exception:
            logger.exception("auto_clockout_failed")
            if not args.loop:
                return 1
        if not args.loop:
            return 0
        time.sleep(next_run_delay(utcnow(), args.interval).total_seconds())


if __name__ == "__main__":
    sys.exit(main())
