from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import Principal, require_admin
from ..db import get_db
from ..schemas.time_entries import (
    AuditLogOut,
    AutoClockoutRequest,
    AutoClockoutResponse,
    BulkApproveRequest,
    BulkApproveResponse,
    TimeEntryOut,
)
from ..services.audit import get_audit_logs, verify_audit_log
from ..services.auto_clockout import run_auto_clockout_once
from ..services.review import bulk_approve, list_entries_for_review
from .timeclock import entry_out


router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/time-entries", response_model=List[TimeEntryOut])
def list_time_entries(
    status: Optional[str] = None,
    tag: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    rows = list_entries_for_review(db, principal, status=status, tag=tag, since=since, until=until, limit=limit)
    return [entry_out(r) for r in rows]


@router.post("/time-entries/bulk-approve", response_model=BulkApproveResponse)
def bulk_approve_entries(
    payload: BulkApproveRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    return bulk_approve(db, principal, payload.entry_ids)


@router.post("/auto-clockout", response_model=AutoClockoutResponse)
def auto_clockout(
    payload: AutoClockoutRequest,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    return run_auto_clockout_once(db, dry_run=payload.dry_run).to_dict()


@router.get("/audit-logs", response_model=List[AuditLogOut])
def list_audit_logs(
    target_type: Optional[str] = Query(None, alias="targetType"),
    target_id: Optional[str] = Query(None, alias="targetId"),
    action: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    logs = get_audit_logs(
        db,
        principal.company_id,
        target_type=target_type,
        target_id=target_id,
        action=action,
        limit=limit,
        offset=offset,
    )
    return [
        AuditLogOut.model_validate(log).model_copy(update={"verified": verify_audit_log(log)})
        for log in logs
    ]
