from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import Principal, get_current_principal, require_manager
from ..db import get_db
from ..schemas.time_entries import (
    DisputeRequest,
    DisputeResponse,
    EditTimeEntryRequest,
    EditTimeEntryResponse,
)
from ..services.time_entries import dispute_time_entry, edit_time_entry


router = APIRouter(prefix="/time-entries", tags=["time-entries"])


@router.patch("/{entry_id}", response_model=EditTimeEntryResponse)
def edit_entry(
    entry_id: str,
    payload: EditTimeEntryRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_manager),
):
    return edit_time_entry(
        db,
        principal,
        entry_id,
        edit_reason=payload.edit_reason,
        clock_in_at=payload.clock_in_at,
        clock_out_at=payload.clock_out_at,
        notes=payload.notes,
        force=payload.force,
    )


@router.post("/{entry_id}/dispute", response_model=DisputeResponse)
def dispute_entry(
    entry_id: str,
    payload: DisputeRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return dispute_time_entry(db, principal, entry_id, reason=payload.reason)
