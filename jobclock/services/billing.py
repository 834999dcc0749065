"""
Billable-hours helpers.

Hours are computed per entry from clock-in/clock-out, optionally rounded to
an increment (e.g. 0.25 = 15 minutes) and summed. Money uses Decimal.
"""
from collections import OrderedDict
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from ..config import settings
from .records import TimeEntryRecord

_ROUNDING = {
    "nearest": ROUND_HALF_UP,
    "up": ROUND_CEILING,
    "down": ROUND_FLOOR,
}

CENT = Decimal("0.01")


def round_hours(hours: float, increment: Optional[float] = None, mode: Optional[str] = None) -> float:
    """
    Round hours to a multiple of increment.

    Examples with increment 0.25, mode nearest: 3.12 -> 3.0, 3.20 -> 3.25.
    An increment of 0 (the default) leaves hours unchanged.
    """
    if increment is None:
        increment = settings.invoice_hours_increment
    mode = mode or settings.invoice_rounding_mode
    if mode not in _ROUNDING:
        raise ValueError(f"Unknown rounding mode: {mode}")
    if not increment or increment <= 0:
        return hours
    step = Decimal(str(increment))
    units = (Decimal(str(hours)) / step).quantize(Decimal(1), rounding=_ROUNDING[mode])
    return float(units * step)


def entry_hours(entry: TimeEntryRecord, increment: Optional[float] = None, mode: Optional[str] = None) -> float:
    if entry.clock_out_at is None:
        raise ValueError(f"Time entry {entry.id} missing clock-out time")
    hours = entry.duration_hours()
    if hours < 0:
        raise ValueError(f"Time entry {entry.id} has clock-out before clock-in")
    return round_hours(hours, increment, mode)


def calculate_hours(entries: Iterable[TimeEntryRecord], increment: Optional[float] = None, mode: Optional[str] = None) -> float:
    """Sum of individually rounded entry hours."""
    return sum((entry_hours(e, increment, mode) for e in entries), 0.0)


def group_entries_by_job(entries: Iterable[TimeEntryRecord]) -> Dict[str, List[TimeEntryRecord]]:
    grouped: Dict[str, List[TimeEntryRecord]] = OrderedDict()
    for entry in entries:
        grouped.setdefault(entry.job_id, []).append(entry)
    return grouped


def group_entries_by_worker(entries: Iterable[TimeEntryRecord]) -> Dict[str, List[TimeEntryRecord]]:
    grouped: Dict[str, List[TimeEntryRecord]] = OrderedDict()
    for entry in entries:
        grouped.setdefault(entry.user_id, []).append(entry)
    return grouped


def calculate_hours_by_job(entries, increment=None, mode=None) -> Dict[str, float]:
    return {job_id: calculate_hours(group, increment, mode) for job_id, group in group_entries_by_job(entries).items()}


def calculate_hours_by_worker(entries, increment=None, mode=None) -> Dict[str, float]:
    return {uid: calculate_hours(group, increment, mode) for uid, group in group_entries_by_worker(entries).items()}


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def build_line_items(
    entries: List[TimeEntryRecord],
    hourly_rate: Decimal,
    job_names: Optional[Dict[str, str]] = None,
    increment: Optional[float] = None,
    mode: Optional[str] = None,
) -> List[dict]:
    """One labor line per job, in first-seen order."""
    job_names = job_names or {}
    items = []
    for job_id, group in group_entries_by_job(entries).items():
        hours = calculate_hours(group, increment, mode)
        items.append({
            "description": f"Labor - {job_names.get(job_id) or job_id}",
            "jobId": job_id,
            "quantity": round(hours, 4),
            "unitPrice": str(money(hourly_rate)),
            "amount": str(money(Decimal(str(hours)) * hourly_rate)),
            "discount": "0.00",
            "timeEntryIds": [e.id for e in group],
        })
    return items
