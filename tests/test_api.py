from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from jobclock.auth.security import create_attestation_token
from jobclock.config import settings
from jobclock.db import get_db
from jobclock.main import app
from jobclock.models.models import TimeEntry, utcnow
from jobclock.services.idempotency import generate_event_id

from conftest import OTHER_COMPANY, admin, assign, auth_headers, completed_entry, make_entry, make_job, manager, north_of_site, worker


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def site(db):
    job = make_job(db)
    assign(db, job, "worker-1")
    return job


def clock_in_body(job, meters=42, **extra):
    lat, lng = north_of_site(meters)
    body = {"jobId": job.id, "lat": lat, "lng": lng, "accuracy": 10, "clientEventId": generate_event_id()}
    body.update(extra)
    return body


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


def test_requires_authentication(client, site):
    resp = client.post("/timeclock/clock-in", json=clock_in_body(site))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthenticated"


def test_attestation_enforced_when_enabled(client, site, monkeypatch):
    monkeypatch.setattr(settings, "attestation_required", True)
    headers = auth_headers(worker())
    resp = client.post("/timeclock/clock-in", json=clock_in_body(site), headers=headers)
    assert resp.status_code == 401

    headers["X-Attestation-Token"] = create_attestation_token("jobclock-ios")
    resp = client.post("/timeclock/clock-in", json=clock_in_body(site), headers=headers)
    assert resp.status_code == 200


def test_clock_in_and_out_flow(client, site):
    headers = auth_headers(worker())
    resp = client.post("/timeclock/clock-in", json=clock_in_body(site), headers=headers)
    assert resp.status_code == 200
    entry_id = resp.json()["entryId"]

    active = client.get("/timeclock/active", headers=headers).json()
    assert active["id"] == entry_id
    assert active["state"] == "active"

    lat, lng = north_of_site(400)
    resp = client.post(
        "/timeclock/clock-out",
        json={"timeEntryId": entry_id, "lat": lat, "lng": lng, "accuracy": 10, "clientEventId": generate_event_id()},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert "outside geofence" in resp.json()["warning"]

    assert client.get("/timeclock/active", headers=headers).json() is None


def test_clock_in_outside_fence_is_412(client, site):
    resp = client.post("/timeclock/clock-in", json=clock_in_body(site, meters=300), headers=auth_headers(worker()))
    assert resp.status_code == 412
    assert resp.json()["error"]["code"] == "failed-precondition"
    assert resp.json()["error"]["message"].startswith("Outside geofence")


def test_malformed_body_is_400(client, site):
    resp = client.post("/timeclock/clock-in", json=clock_in_body(site, lat="north"), headers=auth_headers(worker()))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid-argument"


def test_bulk_approve_endpoint(client, db):
    job = make_job(db)
    a = completed_entry(db, job, user_id="w1")
    b = completed_entry(db, job, user_id="w2")
    foreign = completed_entry(db, make_job(db, company_id=OTHER_COMPANY), user_id="w3")

    resp = client.post(
        "/admin/time-entries/bulk-approve",
        json={"entryIds": [a.id, b.id, foreign.id]},
        headers=auth_headers(admin()),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert (body["approvedCount"], body["alreadyApprovedCount"], body["skippedMismatchCount"]) == (2, 0, 1)

    resp = client.get("/admin/time-entries", params={"status": "approved"}, headers=auth_headers(admin()))
    assert {e["id"] for e in resp.json()} == {a.id, b.id}


def test_admin_routes_reject_workers(client):
    resp = client.post("/admin/time-entries/bulk-approve", json={"entryIds": ["x"]}, headers=auth_headers(worker()))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "permission-denied"


def test_audit_log_endpoint_scoped_to_company(client, db):
    job = make_job(db)
    a = completed_entry(db, job, user_id="w1")
    foreign = completed_entry(db, make_job(db, company_id=OTHER_COMPANY), user_id="w3")
    client.post("/admin/time-entries/bulk-approve", json={"entryIds": [a.id, foreign.id]}, headers=auth_headers(admin()))

    resp = client.get("/admin/audit-logs", params={"action": "approve_time_entry"}, headers=auth_headers(admin()))
    assert resp.status_code == 200
    logs = resp.json()
    assert [(log["targetId"], log["companyId"], log["verified"]) for log in logs] == [(a.id, "acme", True)]

    resp = client.get("/admin/audit-logs", params={"targetId": foreign.id}, headers=auth_headers(admin()))
    assert resp.json() == []
    assert client.get("/admin/audit-logs", headers=auth_headers(manager())).status_code == 403


def test_auto_clockout_dry_run_endpoint(client, db):
    job = make_job(db)
    entry = make_entry(db, job, clock_in_at=utcnow() - timedelta(hours=13))

    resp = client.post("/admin/auto-clockout", json={"dryRun": True}, headers=auth_headers(admin()))
    assert resp.status_code == 200
    assert resp.json()["dryRun"] is True
    assert [e["entryId"] for e in resp.json()["entries"]] == [entry.id]

    db.expire_all()
    assert db.get(TimeEntry, entry.id).status == "active"


def test_edit_and_dispute_endpoints(client, db):
    job = make_job(db)
    entry = completed_entry(db, job)

    resp = client.post(
        f"/time-entries/{entry.id}/dispute", json={"reason": "Wrong hours"}, headers=auth_headers(worker())
    )
    assert resp.status_code == 200
    assert resp.json()["exceptionTags"] == ["disputed"]

    resp = client.patch(
        f"/time-entries/{entry.id}",
        json={"editReason": "Adjusted after dispute", "notes": "ok"},
        headers=auth_headers(manager()),
    )
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "hasOverlap": False, "requiresReapproval": False}


def test_invoice_from_time_endpoint(client, db):
    job = make_job(db)
    a = completed_entry(db, job, hours=2, approved=True)
    resp = client.post(
        "/invoices/from-time",
        json={
            "timeEntryIds": [a.id],
            "hourlyRate": 75,
            "customerId": "cust-1",
            "dueDate": (utcnow() + timedelta(days=30)).isoformat(),
        },
        headers=auth_headers(manager()),
    )
    assert resp.status_code == 200
    assert resp.json()["entriesLocked"] == 1
    assert resp.json()["totalAmount"] == pytest.approx(150.0)

    again = client.post(
        "/invoices/from-time",
        json={"timeEntryIds": [a.id], "hourlyRate": 75, "customerId": "cust-1", "dueDate": "2030-01-01T00:00:00Z"},
        headers=auth_headers(manager()),
    )
    assert again.status_code == 412
