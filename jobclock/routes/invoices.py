from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import Principal, require_manager
from ..db import get_db
from ..schemas.time_entries import InvoiceFromTimeRequest, InvoiceFromTimeResponse
from ..services.invoicing import create_invoice_from_time


router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("/from-time", response_model=InvoiceFromTimeResponse)
def invoice_from_time(
    payload: InvoiceFromTimeRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_manager),
):
    return create_invoice_from_time(
        db,
        principal,
        entry_ids=payload.time_entry_ids,
        hourly_rate=payload.hourly_rate,
        customer_id=payload.customer_id,
        due_date=payload.due_date,
        company_id=payload.company_id,
        job_id=payload.job_id,
        notes=payload.notes,
    )
