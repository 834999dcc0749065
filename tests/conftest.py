import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["ATTESTATION_REQUIRED"] = "false"

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from jobclock.auth.security import Principal, create_access_token
from jobclock.db import Base
from jobclock.models.models import Assignment, Job, TimeEntry, TimeEntryStatus


NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)

COMPANY = "acme"
OTHER_COMPANY = "globex"

# San Francisco City Hall area
SITE_LAT = 37.7793
SITE_LNG = -122.4193
METERS_PER_DEG_LAT = 111194.9


def north_of_site(meters: float):
    return SITE_LAT + meters / METERS_PER_DEG_LAT, SITE_LNG


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def worker(uid="worker-1", company_id=COMPANY) -> Principal:
    return Principal(uid=uid, company_id=company_id, role="worker")


def manager(uid="manager-1", company_id=COMPANY) -> Principal:
    return Principal(uid=uid, company_id=company_id, role="manager")


def admin(uid="admin-1", company_id=COMPANY) -> Principal:
    return Principal(uid=uid, company_id=company_id, role="admin", admin_claim=True)


def auth_headers(principal: Principal) -> dict:
    token = create_access_token(
        principal.uid, principal.company_id, role=principal.role, admin=principal.admin_claim
    )
    return {"Authorization": f"Bearer {token}"}


def make_job(db, company_id=COMPANY, lat=SITE_LAT, lng=SITE_LNG, radius=100, job_id=None, name="City Hall", **kwargs) -> Job:
    geofence = {"lat": lat, "lng": lng, "radiusMeters": radius} if lat is not None else None
    job = Job(company_id=company_id, name=name, geofence=geofence, **kwargs)
    if job_id:
        job.id = job_id
    db.add(job)
    db.commit()
    return job


def assign(db, job: Job, user_id="worker-1", start=None, end=None, active=True) -> Assignment:
    assignment = Assignment(
        company_id=job.company_id,
        user_id=user_id,
        job_id=job.id,
        active=active,
        start_date=start,
        end_date=end,
    )
    db.add(assignment)
    db.commit()
    return assignment


def make_entry(
    db,
    job: Job,
    user_id="worker-1",
    clock_in_at=None,
    clock_out_at=None,
    approved=False,
    invoice_id=None,
    tags=None,
    company_id=None,
) -> TimeEntry:
    clock_in_at = clock_in_at or NOW - timedelta(hours=8)
    if invoice_id:
        status = TimeEntryStatus.INVOICED
    elif clock_out_at is not None:
        status = TimeEntryStatus.COMPLETED
    else:
        status = TimeEntryStatus.ACTIVE
    entry = TimeEntry(
        company_id=company_id or job.company_id,
        user_id=user_id,
        job_id=job.id,
        status=status,
        clock_in_at=clock_in_at,
        clock_out_at=clock_out_at,
        clock_in_geofence_valid=True,
        exception_tags=list(tags or []),
        approved=approved,
        approved_by="admin-1" if approved else None,
        approved_at=NOW if approved else None,
        invoice_id=invoice_id,
    )
    db.add(entry)
    db.commit()
    return entry


def completed_entry(db, job, hours=8, **kwargs) -> TimeEntry:
    start = kwargs.pop("clock_in_at", NOW - timedelta(hours=hours + 1))
    return make_entry(db, job, clock_in_at=start, clock_out_at=start + timedelta(hours=hours), **kwargs)
