from datetime import timedelta
from decimal import Decimal

import pytest

from jobclock.services import billing
from jobclock.services.records import TimeEntryRecord

from conftest import NOW


def record(entry_id, hours, job_id="job-1", user_id="w1"):
    start = NOW - timedelta(hours=hours)
    return TimeEntryRecord(
        id=entry_id, company_id="acme", user_id=user_id, job_id=job_id,
        status="completed", clock_in_at=start, clock_out_at=NOW,
        clock_in_geofence_valid=True, clock_out_geofence_valid=True,
        exception_tags=frozenset(), approved=True, approved_by="admin-1", approved_at=NOW,
        invoice_id=None, invoiced_at=None, notes=None,
    )


@pytest.mark.parametrize("hours,increment,mode,expected", [
    (3.12, 0.25, "nearest", 3.0),
    (3.20, 0.25, "nearest", 3.25),
    (3.01, 0.25, "up", 3.25),
    (3.24, 0.25, "down", 3.0),
    (3.1234, 0, "nearest", 3.1234),
])
def test_round_hours(hours, increment, mode, expected):
    assert billing.round_hours(hours, increment, mode) == pytest.approx(expected)


def test_unknown_rounding_mode():
    with pytest.raises(ValueError):
        billing.round_hours(1, 0.25, "sideways")


def test_totals_and_grouping():
    entries = [record("a", 2), record("b", 3, job_id="job-2", user_id="w2"), record("c", 1.5)]
    assert billing.calculate_hours(entries) == pytest.approx(6.5)
    assert billing.calculate_hours_by_job(entries) == {"job-1": pytest.approx(3.5), "job-2": pytest.approx(3)}
    assert billing.calculate_hours_by_worker(entries) == {"w1": pytest.approx(3.5), "w2": pytest.approx(3)}


def test_open_entry_has_no_hours():
    open_entry = record("a", 1)
    open_entry = TimeEntryRecord(**{**open_entry.__dict__, "clock_out_at": None})
    with pytest.raises(ValueError):
        billing.entry_hours(open_entry)


def test_line_items_per_job():
    entries = [record("a", 2), record("b", 3, job_id="job-2"), record("c", 1.5)]
    items = billing.build_line_items(entries, Decimal("42.50"), {"job-1": "Main St"})
    assert [i["jobId"] for i in items] == ["job-1", "job-2"]
    assert items[0]["description"] == "Labor - Main St"
    assert items[1]["description"] == "Labor - job-2"
    assert items[0]["quantity"] == pytest.approx(3.5)
    assert items[0]["amount"] == "148.75"
    assert items[0]["timeEntryIds"] == ["a", "c"]
