"""
Exception tagging for admin review.

Tags are additive annotations; they never block a state transition.
"""
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Set

from sqlalchemy import String, cast, or_
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import TimeEntry

TAG_GEOFENCE_OUT = "geofence_out"
TAG_AUTO_CLOCKOUT = "auto_clockout"
TAG_EXCEEDS_12H = "exceeds_12h"
TAG_OVERLAP = "overlap"
TAG_DISPUTED = "disputed"

KNOWN_TAGS = frozenset({TAG_GEOFENCE_OUT, TAG_AUTO_CLOCKOUT, TAG_EXCEEDS_12H, TAG_OVERLAP, TAG_DISPUTED})


def merge_tags(existing: Optional[Iterable[str]], *tags: str) -> List[str]:
    """Set union, stored sorted so the column value is stable."""
    return sorted(set(existing or ()) | set(tags))


def max_shift(max_shift_hours: Optional[float] = None) -> timedelta:
    return timedelta(hours=max_shift_hours if max_shift_hours is not None else settings.max_shift_hours)


def exceeds_max_shift(clock_in_at: datetime, clock_out_at: datetime, max_shift_hours: Optional[float] = None) -> bool:
    return clock_out_at - clock_in_at > max_shift(max_shift_hours)


def has_tag(tag: str):
    """
    SQL predicate: the entry's JSON tag list contains tag.

    Matches the quoted element in the serialized list, which works the same on
    SQLite and PostgreSQL json columns.
    """
    pattern = '%"' + tag.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + '"%'
    return cast(TimeEntry.exception_tags, String).like(pattern, escape="\\")


def find_overlapping_entries(
    db: Session,
    company_id: str,
    user_id: str,
    start: datetime,
    end: datetime,
    exclude_id: Optional[str] = None,
) -> List[str]:
    """Ids of the worker's other entries whose time range intersects [start, end)."""
    query = db.query(TimeEntry.id).filter(
        TimeEntry.company_id == company_id,
        TimeEntry.user_id == user_id,
        TimeEntry.clock_in_at < end,
        or_(TimeEntry.clock_out_at.is_(None), TimeEntry.clock_out_at > start),
    )
    if exclude_id:
        query = query.filter(TimeEntry.id != exclude_id)
    return [row.id for row in query.all()]


def classify_closed_entry(
    clock_in_at: datetime,
    clock_out_at: datetime,
    geofence_valid: Optional[bool],
    has_overlap: bool = False,
    max_shift_hours: Optional[float] = None,
) -> Set[str]:
    """
    Tags earned by an entry at the moment it is closed.

    geofence_valid=None means location unknown (forced close) and earns no
    geofence tag.
    """
    tags = set()
    if geofence_valid is False:
        tags.add(TAG_GEOFENCE_OUT)
    if exceeds_max_shift(clock_in_at, clock_out_at, max_shift_hours):
        tags.add(TAG_EXCEEDS_12H)
    if has_overlap:
        tags.add(TAG_OVERLAP)
    return tags
