"""
Field edits on existing time entries (admin corrections, worker disputes).

Both paths go through the mutability guard before touching the row.
"""
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from ..auth.security import Principal
from ..config import settings
from ..errors import FailedPrecondition, InvalidArgument, NotFound, PermissionDenied
from ..models.models import TimeEntry, TimeEntryStatus, utcnow
from .audit import compute_diff, create_audit_log
from .exception_tags import TAG_DISPUTED, TAG_OVERLAP, find_overlapping_entries, merge_tags
from .mutability import ensure_mutable, guard_audit_details
from .records import as_utc

logger = structlog.get_logger(__name__)

REASON_MIN = 3
REASON_MAX = 500


def _check_reason(reason: Optional[str], field: str) -> str:
    if not reason or not (REASON_MIN <= len(reason.strip()) <= REASON_MAX):
        raise InvalidArgument(f"{field} must be between {REASON_MIN} and {REASON_MAX} characters")
    return reason.strip()


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def edit_time_entry(
    db: Session,
    principal: Principal,
    entry_id: str,
    edit_reason: str,
    clock_in_at: Optional[datetime] = None,
    clock_out_at: Optional[datetime] = None,
    notes: Optional[str] = None,
    force: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    """
    Correct the times or notes of an entry.

    Time changes on an approved (but not invoiced) entry drop the approval so
    it goes back through review. Overlaps with the worker's other entries are
    tagged, never rejected.
    """
    now = now or utcnow()
    if not principal.is_manager:
        raise PermissionDenied("Only admin or manager can edit time entries")
    if not principal.company_id:
        raise PermissionDenied("Missing company_id claim")
    edit_reason = _check_reason(edit_reason, "editReason")
    if clock_in_at is None and clock_out_at is None and notes is None:
        raise InvalidArgument("No changes specified")

    entry = db.get(TimeEntry, entry_id)
    if entry is None:
        raise NotFound("Time entry")
    if entry.company_id != principal.company_id:
        raise PermissionDenied("Entry belongs to different company")

    bypassed = ensure_mutable(entry, principal, force)

    if clock_out_at is not None and entry.status == TimeEntryStatus.ACTIVE:
        raise FailedPrecondition("Entry is still active. Clock out before editing clock-out time.")

    old_in = as_utc(entry.clock_in_at)
    old_out = as_utc(entry.clock_out_at)
    new_in = as_utc(clock_in_at) if clock_in_at is not None else old_in
    new_out = as_utc(clock_out_at) if clock_out_at is not None else old_out

    if new_out is not None and new_out <= new_in:
        raise InvalidArgument("Clock-out must be after clock-in")
    if new_out is not None and new_out - new_in > timedelta(hours=settings.max_edit_shift_hours):
        raise InvalidArgument(f"Shift duration cannot exceed {settings.max_edit_shift_hours:g} hours")

    time_changed = new_in != old_in or new_out != old_out
    overlaps = []
    if time_changed:
        overlaps = find_overlapping_entries(
            db, entry.company_id, entry.user_id, new_in, new_out or now, exclude_id=entry.id
        )

    before = {"clockInAt": _iso(old_in), "clockOutAt": _iso(old_out), "notes": entry.notes}
    after = {
        "clockInAt": _iso(new_in),
        "clockOutAt": _iso(new_out),
        "notes": notes if notes is not None else entry.notes,
    }
    requires_reapproval = time_changed and bool(entry.approved) and entry.invoice_id is None
    guard_details = guard_audit_details(entry, bypassed)

    try:
        entry.clock_in_at = new_in
        entry.clock_out_at = new_out
        if notes is not None:
            entry.notes = notes
        if overlaps:
            entry.exception_tags = merge_tags(entry.exception_tags, TAG_OVERLAP)
        if requires_reapproval:
            entry.approved = False
            entry.approved_by = None
            entry.approved_at = None
            entry.requires_reapproval = True
        entry.updated_at = now

        details = {
            "editReason": edit_reason,
            "changes": compute_diff(before, after),
            "overlapsWith": overlaps,
            "requiresReapproval": requires_reapproval,
        }
        details.update(guard_details)
        create_audit_log(
            db,
            action="time_entry_edit",
            actor_uid=principal.uid,
            actor_role=principal.role,
            target_type="time_entry",
            target_id=entry.id,
            company_id=entry.company_id,
            details=details,
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "time_entry_edited",
        entryId=entry_id,
        editedBy=principal.uid,
        forceEdit=bypassed,
        hasOverlap=bool(overlaps),
        requiresReapproval=requires_reapproval,
    )
    return {"ok": True, "hasOverlap": bool(overlaps), "requiresReapproval": requires_reapproval}


def dispute_time_entry(
    db: Session,
    principal: Principal,
    entry_id: str,
    reason: str,
    now: Optional[datetime] = None,
) -> dict:
    """Worker flags their own entry for review."""
    now = now or utcnow()
    reason = _check_reason(reason, "reason")

    entry = db.get(TimeEntry, entry_id)
    if entry is None:
        raise NotFound("Time entry")
    if entry.user_id != principal.uid:
        raise PermissionDenied("Not your time entry")

    ensure_mutable(entry)

    try:
        entry.exception_tags = merge_tags(entry.exception_tags, TAG_DISPUTED)
        entry.updated_at = now
        create_audit_log(
            db,
            action="dispute_time_entry",
            actor_uid=principal.uid,
            actor_role=principal.role,
            target_type="time_entry",
            target_id=entry.id,
            company_id=entry.company_id,
            details={"reason": reason},
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("time_entry_disputed", entryId=entry_id, uid=principal.uid)
    return {"ok": True, "exceptionTags": list(entry.exception_tags)}
