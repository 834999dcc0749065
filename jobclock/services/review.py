"""
Admin review: bulk approval and the review queue.
"""
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..auth.security import Principal
from ..config import settings
from ..errors import InvalidArgument, PermissionDenied
from ..models.models import TimeEntry, TimeEntryStatus, utcnow
from .audit import create_audit_log
from .exception_tags import KNOWN_TAGS, has_tag

logger = structlog.get_logger(__name__)


def bulk_approve(
    db: Session,
    principal: Principal,
    entry_ids: List[str],
    now: Optional[datetime] = None,
) -> dict:
    """
    Approve a batch of completed entries for the admin's company.

    Ids from another company, unknown ids and still-active entries are skipped
    and reported rather than failing the batch. All approvals and their audit
    entries commit in a single transaction.
    """
    now = now or utcnow()
    if not principal.is_admin:
        raise PermissionDenied("Must be admin to approve time entries")
    if not principal.company_id:
        raise PermissionDenied("Missing company_id claim")
    if not entry_ids or not isinstance(entry_ids, list):
        raise InvalidArgument("entryIds must be a non-empty array")
    if len(entry_ids) > settings.bulk_approve_max:
        raise InvalidArgument(
            f"Maximum {settings.bulk_approve_max} entries per batch. Split into multiple requests."
        )

    # Preserve caller order, drop duplicates
    unique_ids = list(dict.fromkeys(entry_ids))
    rows = db.query(TimeEntry).filter(TimeEntry.id.in_(unique_ids)).all()
    by_id = {row.id: row for row in rows}

    approved = 0
    already = 0
    mismatched = 0
    not_found = 0
    not_completed = 0
    skipped = []

    try:
        for entry_id in unique_ids:
            entry = by_id.get(entry_id)
            if entry is None:
                not_found += 1
                skipped.append({"entryId": entry_id, "reason": "not_found"})
                continue
            if entry.company_id != principal.company_id:
                mismatched += 1
                skipped.append({"entryId": entry_id, "reason": "company_mismatch"})
                logger.warning(
                    "bulk_approve_cross_company_blocked",
                    adminUid=principal.uid,
                    adminCompanyId=principal.company_id,
                    entryCompanyId=entry.company_id,
                    entryId=entry_id,
                )
                continue
            if entry.approved:
                already += 1
                continue
            if entry.status != TimeEntryStatus.COMPLETED:
                not_completed += 1
                skipped.append({"entryId": entry_id, "reason": "not_completed"})
                continue

            updated = db.execute(
                update(TimeEntry)
                .where(TimeEntry.id == entry_id, TimeEntry.approved.is_(False))
                .values(
                    approved=True,
                    approved_by=principal.uid,
                    approved_at=now,
                    requires_reapproval=False,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not updated:
                already += 1
                continue

            create_audit_log(
                db,
                action="approve_time_entry",
                actor_uid=principal.uid,
                actor_role=principal.role,
                target_type="time_entry",
                target_id=entry_id,
                company_id=principal.company_id,
                details={"before": {"approved": False}, "after": {"approved": True}},
                timestamp=now,
            )
            approved += 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "bulk_approve_complete",
        adminUid=principal.uid,
        adminCompanyId=principal.company_id,
        approved=approved,
        alreadyApproved=already,
        skippedMismatch=mismatched,
        notFound=not_found,
        notCompleted=not_completed,
    )
    return {
        "approvedCount": approved,
        "alreadyApprovedCount": already,
        "skippedMismatchCount": mismatched,
        "notFoundCount": not_found,
        "notCompletedCount": not_completed,
        "skipped": skipped,
    }


def list_entries_for_review(
    db: Session,
    principal: Principal,
    status: Optional[str] = None,
    tag: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 100,
) -> List[TimeEntry]:
    """Company-scoped entries filtered by lifecycle state, tag and clock-in window."""
    if not principal.is_admin:
        raise PermissionDenied("Must be admin to review time entries")
    if tag is not None and tag not in KNOWN_TAGS:
        raise InvalidArgument(f"Unknown exception tag: {tag}")

    query = db.query(TimeEntry).filter(TimeEntry.company_id == principal.company_id)
    if status == TimeEntryStatus.APPROVED:
        query = query.filter(TimeEntry.status == TimeEntryStatus.COMPLETED, TimeEntry.approved.is_(True))
    elif status == TimeEntryStatus.COMPLETED:
        query = query.filter(TimeEntry.status == TimeEntryStatus.COMPLETED, TimeEntry.approved.is_(False))
    elif status:
        query = query.filter(TimeEntry.status == status)
    if tag is not None:
        query = query.filter(has_tag(tag))
    if since is not None:
        query = query.filter(TimeEntry.clock_in_at >= since)
    if until is not None:
        query = query.filter(TimeEntry.clock_in_at < until)

    return query.order_by(TimeEntry.clock_in_at.desc()).limit(limit).all()
