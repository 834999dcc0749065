from datetime import timedelta

from jobclock.models.models import AuditLog, TimeEntry, TimeEntryStatus
from jobclock.services.auto_clockout import next_run_delay, plan_auto_clockouts, run_auto_clockout_once
from jobclock.services.records import as_utc, to_entry_record

from conftest import NOW, make_entry, make_job, completed_entry


def test_plan_is_pure_and_backdates(db):
    job = make_job(db)
    old = make_entry(db, job, user_id="w1", clock_in_at=NOW - timedelta(hours=14))
    fresh = make_entry(db, job, user_id="w2", clock_in_at=NOW - timedelta(hours=2))
    closed = completed_entry(db, job, user_id="w3", hours=13, clock_in_at=NOW - timedelta(hours=20))

    records = [to_entry_record(e) for e in (old, fresh, closed)]
    actions = plan_auto_clockouts(records, NOW)

    assert [a.entry_id for a in actions] == [old.id]
    action = actions[0]
    assert action.clock_out_at == NOW - timedelta(hours=2)
    assert set(action.tags) == {"auto_clockout", "exceeds_12h"}
    assert action.to_dict()["wouldClockOutAt"] == (NOW - timedelta(hours=2)).isoformat()


def test_plan_threshold_is_configurable(db):
    job = make_job(db)
    entry = make_entry(db, job, clock_in_at=NOW - timedelta(hours=9))
    assert plan_auto_clockouts([to_entry_record(entry)], NOW) == []
    actions = plan_auto_clockouts([to_entry_record(entry)], NOW, max_shift_hours=8)
    assert actions[0].clock_out_at == NOW - timedelta(hours=1)


def test_plan_exactly_at_threshold_is_left_open(db):
    job = make_job(db)
    entry = make_entry(db, job, clock_in_at=NOW - timedelta(hours=12))
    assert plan_auto_clockouts([to_entry_record(entry)], NOW) == []


def test_dry_run_writes_nothing(db):
    job = make_job(db)
    entry = make_entry(db, job, clock_in_at=NOW - timedelta(hours=14))

    result = run_auto_clockout_once(db, now=NOW, dry_run=True)
    assert result.dry_run is True
    assert result.processed == 1
    assert result.to_dict()["entries"][0]["entryId"] == entry.id

    db.expire_all()
    assert db.get(TimeEntry, entry.id).status == TimeEntryStatus.ACTIVE
    assert db.query(AuditLog).count() == 0


def test_sweep_closes_and_tags(db):
    job = make_job(db)
    entry = make_entry(db, job, clock_in_at=NOW - timedelta(hours=14), tags=["overlap"])

    result = run_auto_clockout_once(db, now=NOW)
    assert result.processed == 1

    db.expire_all()
    closed = db.get(TimeEntry, entry.id)
    assert closed.status == TimeEntryStatus.COMPLETED
    assert as_utc(closed.clock_out_at) == NOW - timedelta(hours=2)
    assert closed.clock_out_geofence_valid is None
    assert closed.auto_clock_out is True
    assert closed.exception_tags == ["auto_clockout", "exceeds_12h", "overlap"]

    audit = db.query(AuditLog).filter_by(action="auto_clockout").one()
    assert audit.actor_uid == "system"
    assert audit.target_id == entry.id


def test_rerun_is_noop(db):
    job = make_job(db)
    make_entry(db, job, clock_in_at=NOW - timedelta(hours=14))
    assert run_auto_clockout_once(db, now=NOW).processed == 1
    assert run_auto_clockout_once(db, now=NOW + timedelta(minutes=15)).processed == 0
    assert db.query(AuditLog).filter_by(action="auto_clockout").count() == 1


def test_next_run_delay_aligns_to_quarter_hour():
    assert next_run_delay(NOW.replace(minute=7, second=30)) == timedelta(minutes=7, seconds=30)
    assert next_run_delay(NOW.replace(minute=0)) == timedelta(minutes=15)
