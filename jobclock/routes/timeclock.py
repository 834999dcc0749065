from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import Principal, get_current_principal
from ..db import get_db
from ..schemas.time_entries import (
    ClockInRequest,
    ClockInResponse,
    ClockOutRequest,
    ClockOutResponse,
    TimeEntryOut,
)
from ..services import timeclock
from ..services.records import to_entry_record


router = APIRouter(prefix="/timeclock", tags=["timeclock"])


def entry_out(row) -> TimeEntryOut:
    out = TimeEntryOut.model_validate(row)
    return out.model_copy(update={"state": to_entry_record(row).lifecycle_state})


@router.post("/clock-in", response_model=ClockInResponse)
def clock_in(
    payload: ClockInRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return timeclock.clock_in(
        db,
        principal,
        job_id=payload.job_id,
        lat=payload.lat,
        lng=payload.lng,
        accuracy=payload.accuracy,
        client_event_id=payload.client_event_id,
        device_id=payload.device_id,
    )


@router.post("/clock-out", response_model=ClockOutResponse, response_model_exclude_none=True)
def clock_out(
    payload: ClockOutRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return timeclock.clock_out(
        db,
        principal,
        entry_id=payload.time_entry_id,
        lat=payload.lat,
        lng=payload.lng,
        accuracy=payload.accuracy,
        client_event_id=payload.client_event_id,
        device_id=payload.device_id,
    )


@router.get("/active", response_model=Optional[TimeEntryOut])
def active_entry(db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    row = timeclock.get_active_entry(db, principal)
    return entry_out(row) if row is not None else None
