"""
Idempotency guard for clock operations.

Callers tag every clock-in / clock-out attempt with an opaque event id. The id
must embed its creation time, either as a `{epoch-ms}-{suffix}` prefix or as a
UUIDv7, so stale ids can be rejected without any server-side state.

Records are keyed by (user, operation, event id). The lookup is repeated and
the record written inside the same transaction as the state change, and a
unique constraint makes a concurrent duplicate lose at commit time.
"""
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidArgument
from ..models.models import IdempotencyRecord, utcnow

OP_CLOCK_IN = "clock_in"
OP_CLOCK_OUT = "clock_out"

_TIMESTAMP_PREFIX = re.compile(r"^(\d{13})-")

# Sanity bounds for embedded timestamps (2020-01-01 .. 2100-01-01)
_MIN_EPOCH_MS = 1577836800000
_MAX_EPOCH_MS = 4102444800000


def _uuid7_timestamp_ms(value: str) -> Optional[int]:
    if len(value) != 36 or value[8] != "-" or value[13] != "-" or value[14] != "7":
        return None
    try:
        uuid.UUID(value)
        ms = int(value[0:8] + value[9:13], 16)
    except ValueError:
        return None
    if ms < _MIN_EPOCH_MS or ms > _MAX_EPOCH_MS:
        return None
    return ms


def event_id_timestamp(event_id: str) -> Optional[datetime]:
    """Creation time embedded in an event id, or None if it carries none."""
    match = _TIMESTAMP_PREFIX.match(event_id)
    if match:
        ms = int(match.group(1))
    else:
        ms = _uuid7_timestamp_ms(event_id)
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def validate_event_id(event_id: Optional[str], operation: str, now: Optional[datetime] = None) -> str:
    if not event_id or not isinstance(event_id, str):
        raise InvalidArgument(f"{operation}: event id is required")
    if len(event_id) > settings.event_id_max_length:
        raise InvalidArgument(f"Event id must be ≤{settings.event_id_max_length} characters")

    created_at = event_id_timestamp(event_id)
    if created_at is None:
        raise InvalidArgument(
            'Invalid event id format. Must include a timestamp: either "{epochMillis}-{suffix}" or UUIDv7.'
        )

    now = now or utcnow()
    age = now - created_at
    if age < timedelta(0):
        raise InvalidArgument("Event id timestamp is in the future. Clock skew detected.")
    ttl = timedelta(hours=settings.event_id_ttl_hours)
    if age >= ttl:
        raise InvalidArgument(
            f"Event id expired. {operation} must use an event id created within the last "
            f"{settings.event_id_ttl_hours} hours (current age: {int(age.total_seconds() // 3600)} hours)."
        )
    return event_id


def generate_event_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:12]}"


def find_prior_result(db: Session, user_id: str, operation: str, event_id: str) -> Optional[dict]:
    record = db.query(IdempotencyRecord).filter(
        IdempotencyRecord.user_id == user_id,
        IdempotencyRecord.operation == operation,
        IdempotencyRecord.event_id == event_id,
    ).first()
    if record is None:
        return None
    return dict(record.result)


def record_result(
    db: Session,
    user_id: str,
    operation: str,
    event_id: str,
    result: dict,
    target_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IdempotencyRecord:
    """Stage the result in the current transaction; the caller commits."""
    record = IdempotencyRecord(
        user_id=user_id,
        operation=operation,
        event_id=event_id,
        target_id=target_id,
        result=result,
        created_at=now or utcnow(),
    )
    db.add(record)
    return record


def purge_expired(db: Session, now: Optional[datetime] = None) -> int:
    """
    Delete records older than the event-id TTL.

    Safe because ids past the TTL are rejected before any lookup.
    """
    cutoff = (now or utcnow()) - timedelta(hours=settings.event_id_ttl_hours)
    result = db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.created_at < cutoff))
    db.commit()
    return result.rowcount or 0
