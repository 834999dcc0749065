"""
Auto clock-out sweep.

Closes entries left open past the maximum shift length. The closing time is
backdated to clock-in + threshold rather than now, so a forgotten clock-out
never bills more than one maximum shift.

plan_auto_clockouts() is pure and decides what to do; run_auto_clockout_once()
loads candidates, applies the plan and reports it. Re-running is a no-op for
entries already closed because every write is conditional on status=active.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import TimeEntry, TimeEntryStatus, utcnow
from .audit import SYSTEM_ACTOR, create_audit_log
from .exception_tags import TAG_AUTO_CLOCKOUT, TAG_EXCEEDS_12H, max_shift, merge_tags
from .records import TimeEntryRecord, to_entry_record

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AutoClockoutAction:
    entry_id: str
    company_id: str
    user_id: str
    job_id: str
    clock_in_at: datetime
    clock_out_at: datetime
    tags: tuple
    reason: str

    def to_dict(self) -> dict:
        return {
            "entryId": self.entry_id,
            "companyId": self.company_id,
            "userId": self.user_id,
            "jobId": self.job_id,
            "clockInAt": self.clock_in_at.isoformat(),
            "wouldClockOutAt": self.clock_out_at.isoformat(),
            "tags": list(self.tags),
        }


@dataclass
class SweepResult:
    processed: int
    dry_run: bool
    entries: List[AutoClockoutAction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "dryRun": self.dry_run,
            "entries": [action.to_dict() for action in self.entries],
        }


def plan_auto_clockouts(
    entries: Iterable[TimeEntryRecord],
    now: datetime,
    max_shift_hours: Optional[float] = None,
) -> List[AutoClockoutAction]:
    """Actions for every active entry older than the max shift, oldest first."""
    threshold = max_shift(max_shift_hours)
    hours = threshold.total_seconds() / 3600
    actions = []
    for entry in entries:
        if entry.status != TimeEntryStatus.ACTIVE:
            continue
        if now - entry.clock_in_at <= threshold:
            continue
        actions.append(AutoClockoutAction(
            entry_id=entry.id,
            company_id=entry.company_id,
            user_id=entry.user_id,
            job_id=entry.job_id,
            clock_in_at=entry.clock_in_at,
            clock_out_at=entry.clock_in_at + threshold,
            tags=(TAG_AUTO_CLOCKOUT, TAG_EXCEEDS_12H),
            reason=f"Exceeded {hours:g} hour maximum shift",
        ))
    actions.sort(key=lambda a: a.clock_in_at)
    return actions


def load_overdue_entries(db: Session, now: datetime, max_shift_hours: Optional[float] = None, limit: Optional[int] = None) -> List[TimeEntryRecord]:
    cutoff = now - max_shift(max_shift_hours)
    rows = db.query(TimeEntry).filter(
        TimeEntry.status == TimeEntryStatus.ACTIVE,
        TimeEntry.clock_in_at < cutoff,
    ).order_by(TimeEntry.clock_in_at).limit(limit or settings.auto_clockout_batch_limit).all()
    return [to_entry_record(row) for row in rows]


def apply_auto_clockouts(db: Session, actions: List[AutoClockoutAction], now: datetime) -> List[AutoClockoutAction]:
    """Apply the actions in one transaction; returns those that took effect."""
    applied = []
    try:
        for action in actions:
            current = db.get(TimeEntry, action.entry_id)
            if current is None:
                continue
            updated = db.execute(
                update(TimeEntry)
                .where(TimeEntry.id == action.entry_id, TimeEntry.status == TimeEntryStatus.ACTIVE)
                .values(
                    status=TimeEntryStatus.COMPLETED,
                    clock_out_at=action.clock_out_at,
                    clock_out_lat=None,
                    clock_out_lng=None,
                    clock_out_geofence_valid=None,
                    exception_tags=merge_tags(current.exception_tags, *action.tags),
                    auto_clock_out=True,
                    auto_clock_out_reason=action.reason,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not updated:
                continue
            create_audit_log(
                db,
                action="auto_clockout",
                actor_uid=SYSTEM_ACTOR,
                actor_role=SYSTEM_ACTOR,
                target_type="time_entry",
                target_id=action.entry_id,
                company_id=action.company_id,
                details={
                    "clockOutAt": action.clock_out_at.isoformat(),
                    "reason": action.reason,
                    "tags": list(action.tags),
                },
                timestamp=now,
            )
            applied.append(action)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return applied


def run_auto_clockout_once(
    db: Session,
    now: Optional[datetime] = None,
    dry_run: bool = False,
    max_shift_hours: Optional[float] = None,
) -> SweepResult:
    now = now or utcnow()
    logger.info("auto_clockout_start", now=now.isoformat(), dryRun=dry_run)

    candidates = load_overdue_entries(db, now, max_shift_hours)
    actions = plan_auto_clockouts(candidates, now, max_shift_hours)
    for action in actions:
        logger.info(
            "auto_clockout_entry",
            entryId=action.entry_id,
            userId=action.user_id,
            jobId=action.job_id,
            companyId=action.company_id,
            clockInAt=action.clock_in_at.isoformat(),
            wouldClockOutAt=action.clock_out_at.isoformat(),
            dryRun=dry_run,
        )

    if dry_run:
        db.rollback()
        logger.info("auto_clockout_dry_run_complete", count=len(actions))
        return SweepResult(processed=len(actions), dry_run=True, entries=actions)

    applied = apply_auto_clockouts(db, actions, now)
    logger.info("auto_clockout_complete", count=len(applied))
    return SweepResult(processed=len(applied), dry_run=False, entries=applied)


def next_run_delay(now: datetime, interval_minutes: int = 15) -> timedelta:
    """Time until the next interval boundary (e.g. every quarter hour)."""
    minutes_into = (now.minute % interval_minutes) * 60 + now.second + now.microsecond / 1e6
    return timedelta(seconds=interval_minutes * 60 - minutes_into)
