#!/usr/bin/env python3
"""
Import time entries exported from the previous document store.

Input is a JSON array (or JSON-lines file) of entry documents in any of the
historical shapes; keys are mapped onto the current columns before insert.
Entries whose id already exists are skipped.

Usage:
    python scripts/import_time_entries.py entries.json [--dry-run]
"""
import argparse
import json
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from jobclock.db import session_scope
from jobclock.logging import setup_logging
from jobclock.models.models import TimeEntry
from jobclock.services.records import normalize_time_entry_payload

logger = structlog.get_logger("import_time_entries")

REQUIRED = ("id", "company_id", "user_id", "job_id", "clock_in_at")


def load_documents(path: str) -> list:
    with open(path, "r", encoding="utf-8") as fh:
        text = fh.read().strip()
    if text.startswith("["):
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def import_documents(db, documents: list, dry_run: bool = False) -> dict:
    created = 0
    skipped = 0
    invalid = 0
    seen = set()
    for doc in documents:
        values = normalize_time_entry_payload(doc)
        missing = [k for k in REQUIRED if not values.get(k)]
        if missing:
            invalid += 1
            logger.warning("import_entry_invalid", entryId=values.get("id"), missing=missing)
            continue
        if values["id"] in seen or db.get(TimeEntry, values["id"]) is not None:
            skipped += 1
            continue
        seen.add(values["id"])
        db.add(TimeEntry(**values))
        created += 1
    if dry_run:
        db.rollback()
    else:
        db.commit()
    return {"created": created, "skipped": skipped, "invalid": invalid, "dryRun": dry_run}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Import legacy time entries")
    parser.add_argument("path")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    setup_logging()
    try:
        with session_scope() as db:
            summary = import_documents(db, load_documents(args.path), dry_run=args.dry_run)
    except Exception:
        logger.exception("import_failed", path=args.path)
        return 1
    logger.info("import_complete", **summary)
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
