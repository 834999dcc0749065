import uuid
from datetime import timedelta

import pytest

from jobclock.errors import InvalidArgument
from jobclock.models.models import IdempotencyRecord
from jobclock.services import idempotency

from conftest import NOW


def ms(dt):
    return int(dt.timestamp() * 1000)


def uuid7_at(dt):
    hex_ms = f"{ms(dt):012x}"
    tail = uuid.uuid4().hex
    return f"{hex_ms[:8]}-{hex_ms[8:]}-7{tail[:3]}-8{tail[3:6]}-{tail[6:18]}"


def test_generated_ids_validate():
    event_id = idempotency.generate_event_id(NOW)
    assert idempotency.validate_event_id(event_id, "clockIn", NOW) == event_id
    assert idempotency.event_id_timestamp(event_id) == NOW


def test_uuid7_ids_validate():
    event_id = uuid7_at(NOW - timedelta(minutes=5))
    idempotency.validate_event_id(event_id, "clockIn", NOW)


def test_uuid4_is_rejected():
    with pytest.raises(InvalidArgument) as exc:
        idempotency.validate_event_id(str(uuid.uuid4()), "clockIn", NOW)
    assert "timestamp" in exc.value.message


def test_too_long_is_rejected():
    with pytest.raises(InvalidArgument):
        idempotency.validate_event_id(f"{ms(NOW)}-" + "x" * 60, "clockIn", NOW)


def test_missing_is_rejected():
    with pytest.raises(InvalidArgument):
        idempotency.validate_event_id("", "clockIn", NOW)


def test_expired_is_rejected():
    stale = f"{ms(NOW - timedelta(hours=24))}-abc"
    with pytest.raises(InvalidArgument) as exc:
        idempotency.validate_event_id(stale, "clockIn", NOW)
    assert "expired" in exc.value.message


def test_just_under_ttl_is_accepted():
    recent = f"{ms(NOW - timedelta(hours=23, minutes=59))}-abc"
    idempotency.validate_event_id(recent, "clockIn", NOW)


def test_future_is_rejected():
    future = f"{ms(NOW + timedelta(minutes=1))}-abc"
    with pytest.raises(InvalidArgument) as exc:
        idempotency.validate_event_id(future, "clockIn", NOW)
    assert "future" in exc.value.message


def test_record_and_lookup(db):
    event_id = idempotency.generate_event_id(NOW)
    assert idempotency.find_prior_result(db, "u1", idempotency.OP_CLOCK_IN, event_id) is None
    idempotency.record_result(db, "u1", idempotency.OP_CLOCK_IN, event_id, {"entryId": "e1", "ok": True}, now=NOW)
    db.commit()
    assert idempotency.find_prior_result(db, "u1", idempotency.OP_CLOCK_IN, event_id) == {"entryId": "e1", "ok": True}
    # Keyed per user and per operation
    assert idempotency.find_prior_result(db, "u2", idempotency.OP_CLOCK_IN, event_id) is None
    assert idempotency.find_prior_result(db, "u1", idempotency.OP_CLOCK_OUT, event_id) is None


def test_purge_expired(db):
    idempotency.record_result(db, "u1", idempotency.OP_CLOCK_IN, "old", {"ok": True}, now=NOW - timedelta(hours=30))
    idempotency.record_result(db, "u1", idempotency.OP_CLOCK_IN, "new", {"ok": True}, now=NOW - timedelta(hours=1))
    db.commit()
    assert idempotency.purge_expired(db, NOW) == 1
    assert [r.event_id for r in db.query(IdempotencyRecord).all()] == ["new"]
