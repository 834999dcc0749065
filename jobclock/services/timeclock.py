"""
Time-entry state machine: clock-in and clock-out.

States: active -> completed -> (approved) -> invoiced. No backward moves.

Clock-in hard-fails on geofence; clock-out never does (it tags the entry and
returns a warning instead). The one-active-entry rule is enforced by the
partial unique index on time_entries at insert time; the in-transaction read
only produces a friendlier error for the common case.
"""
import uuid
from datetime import datetime
from typing import Optional

import pytz
import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.security import Principal
from ..config import settings
from ..errors import FailedPrecondition, InvalidArgument, NotFound, PermissionDenied
from ..models.models import Assignment, Job, TimeEntry, TimeEntryStatus, utcnow
from . import geofence
from .audit import create_audit_log
from .exception_tags import TAG_GEOFENCE_OUT, classify_closed_entry, find_overlapping_entries, merge_tags
from .idempotency import OP_CLOCK_IN, OP_CLOCK_OUT, find_prior_result, record_result, validate_event_id
from .records import JobSite, as_utc, normalize_job

logger = structlog.get_logger(__name__)

ALREADY_CLOCKED_IN = "Already clocked in to a job"


def _local_date(value: datetime) -> str:
    return as_utc(value).astimezone(pytz.timezone(settings.tz_default)).strftime("%Y-%m-%d")


def _load_job_site(db: Session, job_id: str) -> JobSite:
    job = db.get(Job, job_id)
    if job is None:
        raise NotFound("Job")
    try:
        return normalize_job(job)
    except ValueError:
        raise FailedPrecondition("Job has no geofence configured")


def check_assignment(db: Session, site: JobSite, user_id: str, now: datetime) -> Assignment:
    """Caller must hold an active assignment whose window contains now."""
    assignment = db.query(Assignment).filter(
        Assignment.company_id == site.company_id,
        Assignment.job_id == site.id,
        Assignment.user_id == user_id,
        Assignment.active.is_(True),
    ).first()
    if assignment is None:
        raise PermissionDenied("Not assigned to this job")

    start = as_utc(assignment.start_date)
    end = as_utc(assignment.end_date)
    if start is not None and now < start:
        raise FailedPrecondition(f"Assignment not active yet. Starts: {_local_date(start)}")
    if end is not None and now > end:
        raise FailedPrecondition(f"Assignment expired. Ended: {_local_date(end)}")
    return assignment


def clock_in(
    db: Session,
    principal: Principal,
    job_id: Optional[str],
    lat,
    lng,
    accuracy: Optional[float] = None,
    client_event_id: Optional[str] = None,
    device_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Open a new time entry for the caller at a job site.

    Returns {"entryId", "ok"}. A replayed event id returns the original
    result without writing anything.
    """
    now = now or utcnow()
    uid = principal.uid

    if not job_id or lat is None or lng is None or not client_event_id:
        raise InvalidArgument("Missing required parameters: jobId, lat, lng, clientEventId")
    validate_event_id(client_event_id, "clockIn", now)
    point = geofence.validate_coordinates(lat, lng)
    accuracy = geofence.validate_accuracy(accuracy)
    geofence.check_accuracy_ceiling(accuracy)

    prior = find_prior_result(db, uid, OP_CLOCK_IN, client_event_id)
    if prior is not None:
        logger.info("clock_in_replay", uid=uid, jobId=job_id, clientEventId=client_event_id, entryId=prior.get("entryId"))
        return prior

    site = _load_job_site(db, job_id)
    check_assignment(db, site, uid, now)

    fence = geofence.evaluate(site.center, site.radius_m, point, accuracy)
    logger.info(
        "clock_in_geofence_check",
        uid=uid,
        jobId=job_id,
        companyId=site.company_id,
        decision="ALLOW" if fence.valid else "DENY",
        clientEventId=client_event_id,
        deviceId=device_id or "unknown",
        **fence.log_fields(),
    )
    if not fence.valid:
        raise FailedPrecondition(
            f"Outside geofence: {fence.distance_m:.1f}m from job site (max {fence.effective_radius_m:.1f}m)"
        )

    entry_id = str(uuid.uuid4())
    result = {"entryId": entry_id, "ok": True}
    try:
        # Re-check inside the transaction; a concurrent twin may have landed
        prior = find_prior_result(db, uid, OP_CLOCK_IN, client_event_id)
        if prior is not None:
            db.rollback()
            return prior

        open_entry = db.query(TimeEntry.id).filter(
            TimeEntry.company_id == site.company_id,
            TimeEntry.user_id == uid,
            TimeEntry.status == TimeEntryStatus.ACTIVE,
        ).first()
        if open_entry is not None:
            raise FailedPrecondition(ALREADY_CLOCKED_IN)

        db.add(TimeEntry(
            id=entry_id,
            company_id=site.company_id,
            user_id=uid,
            job_id=site.id,
            status=TimeEntryStatus.ACTIVE,
            clock_in_at=now,
            clock_in_lat=point.lat,
            clock_in_lng=point.lng,
            clock_in_geofence_valid=True,
            exception_tags=[],
            approved=False,
            client_event_id=client_event_id,
            device_id=device_id,
            radius_used_m=fence.base_radius_m,
            accuracy_at_in_m=accuracy,
            distance_at_in_m=fence.distance_m,
            created_at=now,
            updated_at=now,
        ))
        # Flush the entry first so the active-slot index is checked before the record
        db.flush()
        record_result(db, uid, OP_CLOCK_IN, client_event_id, result, target_id=entry_id, now=now)
        create_audit_log(
            db,
            action="clock_in",
            actor_uid=uid,
            actor_role=principal.role,
            target_type="time_entry",
            target_id=entry_id,
            company_id=site.company_id,
            details={"jobId": site.id, "distanceM": round(fence.distance_m, 1), "deviceId": device_id},
            timestamp=now,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        prior = find_prior_result(db, uid, OP_CLOCK_IN, client_event_id)
        if prior is not None:
            logger.info("clock_in_replay", uid=uid, jobId=job_id, clientEventId=client_event_id, raced=True)
            return prior
        logger.info("clock_in_rejected_active_entry", uid=uid, jobId=job_id, companyId=site.company_id)
        raise FailedPrecondition(ALREADY_CLOCKED_IN)
    except Exception:
        db.rollback()
        raise

    logger.info("clock_in_success", uid=uid, jobId=job_id, companyId=site.company_id, entryId=entry_id)
    return result


def _clock_out_site(db: Session, job_id: str) -> Optional[JobSite]:
    """The entry's job site, or None when its geofence can no longer be resolved."""
    job = db.get(Job, job_id)
    if job is None:
        return None
    try:
        return normalize_job(job)
    except ValueError:
        return None


def clock_out(
    db: Session,
    principal: Principal,
    entry_id: Optional[str],
    lat,
    lng,
    accuracy: Optional[float] = None,
    client_event_id: Optional[str] = None,
    device_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Close the caller's active entry.

    Always succeeds for the owner: outside the geofence, or when the job's
    geofence is gone, the entry is tagged and a warning returned. An entry that
    is no longer active is left as is.
    """
    now = now or utcnow()
    uid = principal.uid

    if not entry_id or lat is None or lng is None:
        raise InvalidArgument("Missing required parameters: timeEntryId, lat, lng")
    point = geofence.validate_coordinates(lat, lng)
    accuracy = geofence.validate_accuracy(accuracy)

    if client_event_id:
        validate_event_id(client_event_id, "clockOut", now)
        prior = find_prior_result(db, uid, OP_CLOCK_OUT, client_event_id)
        if prior is not None:
            logger.info("clock_out_replay", uid=uid, entryId=entry_id, clientEventId=client_event_id)
            return prior

    def closed_result(**log_fields) -> dict:
        # A concurrent twin may have committed between the first lookup and the lock
        prior = find_prior_result(db, uid, OP_CLOCK_OUT, client_event_id) if client_event_id else None
        db.rollback()
        logger.info("clock_out_already_closed", uid=uid, entryId=entry_id, replay=prior is not None, **log_fields)
        return prior if prior is not None else {"ok": True}

    try:
        entry = db.query(TimeEntry).filter(TimeEntry.id == entry_id).with_for_update().first()
        if entry is None:
            raise NotFound("Time entry")
        if entry.user_id != uid:
            raise PermissionDenied("Not your time entry")
        if entry.status != TimeEntryStatus.ACTIVE:
            return closed_result(status=entry.status)
        if client_event_id:
            prior = find_prior_result(db, uid, OP_CLOCK_OUT, client_event_id)
            if prior is not None:
                db.rollback()
                logger.info("clock_out_replay", uid=uid, entryId=entry_id, clientEventId=client_event_id)
                return prior

        site = _clock_out_site(db, entry.job_id)
        fence = geofence.evaluate(site.center, site.radius_m, point, accuracy) if site is not None else None
        # None: location cannot be checked against a job with no geofence
        fence_valid = fence.valid if fence is not None else None
        clock_in_at = as_utc(entry.clock_in_at)
        overlaps = find_overlapping_entries(db, entry.company_id, uid, clock_in_at, now, exclude_id=entry.id)
        tags = classify_closed_entry(clock_in_at, now, fence_valid, has_overlap=bool(overlaps))
        if fence is None:
            tags.add(TAG_GEOFENCE_OUT)

        logger.info(
            "clock_out_geofence_check",
            uid=uid,
            entryId=entry_id,
            jobId=entry.job_id,
            companyId=entry.company_id,
            decision="ALLOW" if fence_valid else "ALLOW_WITH_WARNING",
            tags=sorted(tags),
            clientEventId=client_event_id or "missing",
            deviceId=device_id or "unknown",
            **(fence.log_fields() if fence is not None else {"geofence": "missing"}),
        )

        values = {
            "status": TimeEntryStatus.COMPLETED,
            "clock_out_at": now,
            "clock_out_lat": point.lat,
            "clock_out_lng": point.lng,
            "clock_out_geofence_valid": fence_valid,
            "exception_tags": merge_tags(entry.exception_tags, *tags),
            "distance_at_out_m": fence.distance_m if fence is not None else None,
            "accuracy_at_out_m": accuracy,
            "updated_at": now,
        }
        if client_event_id:
            values["clock_out_client_event_id"] = client_event_id

        # Conditional on still being active: loses cleanly to the sweeper
        updated = db.execute(
            update(TimeEntry)
            .where(TimeEntry.id == entry.id, TimeEntry.status == TimeEntryStatus.ACTIVE)
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if updated == 0:
            return closed_result(raced=True)

        result = {"ok": True}
        if fence is None:
            result["warning"] = "Job has no geofence configured; location not verified. Entry flagged for review."
        elif not fence.valid:
            result["warning"] = (
                f"Clocked out outside geofence ({fence.distance_m:.1f}m from job site). "
                "Entry flagged for review."
            )
        if client_event_id:
            record_result(db, uid, OP_CLOCK_OUT, client_event_id, result, target_id=entry.id, now=now)
        create_audit_log(
            db,
            action="clock_out",
            actor_uid=uid,
            actor_role=principal.role,
            target_type="time_entry",
            target_id=entry.id,
            company_id=entry.company_id,
            details={
                "distanceM": round(fence.distance_m, 1) if fence is not None else None,
                "clockOutGeofenceValid": fence_valid,
                "exceptionTags": sorted(tags),
            },
            timestamp=now,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        prior = find_prior_result(db, uid, OP_CLOCK_OUT, client_event_id) if client_event_id else None
        return prior if prior is not None else {"ok": True}
    except Exception:
        db.rollback()
        raise

    if not fence_valid:
        logger.warning(
            "clock_out_flagged",
            uid=uid,
            entryId=entry_id,
            distanceM=round(fence.distance_m, 1) if fence is not None else None,
        )
    logger.info("clock_out_success", uid=uid, entryId=entry_id, flagged=not fence_valid)
    return result


def get_active_entry(db: Session, principal: Principal) -> Optional[TimeEntry]:
    query = db.query(TimeEntry).filter(
        TimeEntry.user_id == principal.uid,
        TimeEntry.status == TimeEntryStatus.ACTIVE,
    )
    if principal.company_id:
        query = query.filter(TimeEntry.company_id == principal.company_id)
    return query.first()
