from jobclock.models.models import AuditLog
from jobclock.services.audit import compute_diff, create_audit_log, get_audit_logs, verify_audit_log

from conftest import NOW


def test_audit_entry_commits_with_caller(db):
    create_audit_log(db, "clock_in", "w1", "time_entry", "e1", "acme", details={"jobId": "j1"}, timestamp=NOW)
    db.rollback()
    assert db.query(AuditLog).count() == 0

    create_audit_log(db, "clock_in", "w1", "time_entry", "e1", "acme", details={"jobId": "j1"}, timestamp=NOW)
    db.commit()
    assert db.query(AuditLog).count() == 1


def test_integrity_hash_survives_round_trip(db):
    create_audit_log(db, "approve_time_entry", "admin-1", "time_entry", "e1", "acme",
                     details={"after": {"approved": True}}, actor_role="admin", timestamp=NOW)
    db.commit()
    db.expire_all()
    stored = db.query(AuditLog).one()
    assert verify_audit_log(stored)

    stored.details = {"after": {"approved": False}}
    assert not verify_audit_log(stored)


def test_get_audit_logs_scoped_by_company(db):
    create_audit_log(db, "clock_in", "w1", "time_entry", "e1", "acme", timestamp=NOW)
    create_audit_log(db, "clock_in", "w2", "time_entry", "e2", "globex", timestamp=NOW)
    db.commit()
    assert [log.target_id for log in get_audit_logs(db, "acme")] == ["e1"]
    assert get_audit_logs(db, "acme", action="clock_out") == []


def test_compute_diff():
    diff = compute_diff({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4})
    assert diff == {"b": {"before": 2, "after": 3}, "c": {"before": None, "after": 4}}
