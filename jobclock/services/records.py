"""
Read-boundary normalization.

Rows and imported documents come in more than one historical shape (nested or
flat geofence, camelCase or snake_case keys, workerId vs userId). Everything is
converted here into one canonical in-memory record; no other module inspects
the stored shape.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional

from ..models.models import Job, TimeEntry, TimeEntryStatus
from .geofence import GeoPoint


@dataclass(frozen=True)
class JobSite:
    id: str
    company_id: str
    name: Optional[str]
    center: GeoPoint
    radius_m: Optional[float]


@dataclass(frozen=True)
class TimeEntryRecord:
    id: str
    company_id: str
    user_id: str
    job_id: str
    status: str
    clock_in_at: datetime
    clock_out_at: Optional[datetime]
    clock_in_geofence_valid: Optional[bool]
    clock_out_geofence_valid: Optional[bool]
    exception_tags: FrozenSet[str]
    approved: bool
    approved_by: Optional[str]
    approved_at: Optional[datetime]
    invoice_id: Optional[str]
    invoiced_at: Optional[datetime]
    notes: Optional[str]

    @property
    def lifecycle_state(self) -> str:
        """Status with approval folded in: active, completed, approved or invoiced."""
        if self.invoice_id or self.status == TimeEntryStatus.INVOICED:
            return TimeEntryStatus.INVOICED
        if self.approved and self.status == TimeEntryStatus.COMPLETED:
            return TimeEntryStatus.APPROVED
        return self.status

    @property
    def frozen(self) -> bool:
        return self.approved or self.invoice_id is not None

    def duration_hours(self) -> Optional[float]:
        if self.clock_out_at is None:
            return None
        return (self.clock_out_at - self.clock_in_at).total_seconds() / 3600


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _first(mapping: Dict[str, Any], *keys: str):
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def normalize_job(job: Job) -> JobSite:
    """
    Resolve a job's geofence whichever way it was stored.

    Accepts a nested geofence dict ({lat, lng, radiusMeters} or the older
    radiusM / radius_m / latitude / longitude spellings) and falls back to the
    legacy flat columns.
    """
    fence = job.geofence or {}
    lat = _first(fence, "lat", "latitude")
    lng = _first(fence, "lng", "longitude")
    radius = _first(fence, "radiusMeters", "radiusM", "radius_m")
    if lat is None:
        lat = job.lat
    if lng is None:
        lng = job.lng
    if radius is None:
        radius = job.radius_m

    if lat is None or lng is None:
        raise ValueError(f"Job {job.id} has no geofence center")

    return JobSite(
        id=job.id,
        company_id=job.company_id,
        name=job.name,
        center=GeoPoint(float(lat), float(lng)),
        radius_m=float(radius) if radius is not None else None,
    )


def to_entry_record(entry: TimeEntry) -> TimeEntryRecord:
    return TimeEntryRecord(
        id=entry.id,
        company_id=entry.company_id,
        user_id=entry.user_id,
        job_id=entry.job_id,
        status=entry.status,
        clock_in_at=as_utc(entry.clock_in_at),
        clock_out_at=as_utc(entry.clock_out_at),
        clock_in_geofence_valid=entry.clock_in_geofence_valid,
        clock_out_geofence_valid=entry.clock_out_geofence_valid,
        exception_tags=frozenset(entry.exception_tags or ()),
        approved=bool(entry.approved),
        approved_by=entry.approved_by,
        approved_at=as_utc(entry.approved_at),
        invoice_id=entry.invoice_id,
        invoiced_at=as_utc(entry.invoiced_at),
        notes=entry.notes,
    )


# Legacy document keys -> canonical column names
LEGACY_ENTRY_KEYS = {
    "workerId": "user_id",
    "userId": "user_id",
    "companyId": "company_id",
    "jobId": "job_id",
    "clockIn": "clock_in_at",
    "clockInAt": "clock_in_at",
    "clockOut": "clock_out_at",
    "clockOutAt": "clock_out_at",
    "geoOkIn": "clock_in_geofence_valid",
    "clockInGeofenceValid": "clock_in_geofence_valid",
    "geoOkOut": "clock_out_geofence_valid",
    "clockOutGeofenceValid": "clock_out_geofence_valid",
    "exceptionTags": "exception_tags",
    "approvedBy": "approved_by",
    "approved_by": "approved_by",
    "approvedAt": "approved_at",
    "approved_at": "approved_at",
    "invoiceId": "invoice_id",
    "invoice_id": "invoice_id",
    "invoicedAt": "invoiced_at",
    "clientEventId": "client_event_id",
    "clockOutClientEventId": "clock_out_client_event_id",
    "deviceId": "device_id",
}

_PASSTHROUGH = {"id", "status", "approved", "notes", "exception_tags"} | set(LEGACY_ENTRY_KEYS.values())


def _parse_time(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def normalize_time_entry_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map an imported time-entry document onto canonical column names.

    Unknown keys are dropped. A legacy single `exception` string becomes a
    one-element tag list; tags are de-duplicated.
    """
    out: Dict[str, Any] = {}
    for key, value in data.items():
        target = LEGACY_ENTRY_KEYS.get(key, key)
        if target in _PASSTHROUGH and target not in out:
            out[target] = value

    tags = list(out.get("exception_tags") or [])
    if data.get("exception"):
        tags.append(str(data["exception"]))
    out["exception_tags"] = sorted(set(tags))

    out["approved"] = bool(out.get("approved") or False)
    for flag in ("clock_in_geofence_valid", "clock_out_geofence_valid"):
        if out.get(flag) is not None:
            out[flag] = bool(out[flag])
    for field in ("clock_in_at", "clock_out_at", "approved_at", "invoiced_at"):
        if field in out:
            out[field] = _parse_time(out[field])

    if "status" not in out:
        if out.get("invoice_id"):
            out["status"] = TimeEntryStatus.INVOICED
        elif out.get("clock_out_at") is not None:
            out["status"] = TimeEntryStatus.COMPLETED
        else:
            out["status"] = TimeEntryStatus.ACTIVE
    return out
