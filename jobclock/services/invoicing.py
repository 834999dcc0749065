"""
Invoice batching from approved time.

All entries are validated before anything is written; any violation fails the
whole call. The invoice insert and every entry lock then commit in a single
transaction, each lock conditional on the entry still being uninvoiced, so a
concurrent batch over the same entry cannot both succeed.
"""
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..auth.security import Principal
from ..config import settings
from ..errors import FailedPrecondition, InvalidArgument, NotFound, PermissionDenied
from ..models.models import Invoice, Job, TimeEntry, TimeEntryStatus, utcnow
from .audit import create_audit_log
from .billing import build_line_items, money
from .records import TimeEntryRecord, as_utc, to_entry_record

logger = structlog.get_logger(__name__)


def _parse_due_date(value) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise InvalidArgument("Invalid dueDate")


def _parse_rate(value) -> Decimal:
    if isinstance(value, bool):
        raise InvalidArgument("hourlyRate must be a positive number")
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidArgument("hourlyRate must be a positive number")
    if not rate.is_finite() or rate <= 0:
        raise InvalidArgument("hourlyRate must be a positive number")
    return rate


def validate_entries_for_invoice(rows: dict, entry_ids: List[str], company_id: str) -> List[TimeEntryRecord]:
    """Every entry must exist, belong to the company, be completed, approved and uninvoiced."""
    records = []
    for entry_id in entry_ids:
        row = rows.get(entry_id)
        if row is None:
            raise NotFound(f"Time entry {entry_id}")
        entry = to_entry_record(row)
        if entry.company_id != company_id:
            raise PermissionDenied(f"Entry {entry_id} belongs to different company")
        if entry.invoice_id is not None:
            raise FailedPrecondition(f"Entry {entry_id} is already invoiced (invoice: {entry.invoice_id})")
        if entry.status == TimeEntryStatus.ACTIVE or entry.clock_out_at is None:
            raise FailedPrecondition(f"Entry {entry_id} is still active (not clocked out)")
        if entry.status != TimeEntryStatus.COMPLETED:
            raise FailedPrecondition(f"Entry {entry_id} has status {entry.status}, expected completed")
        if not entry.approved:
            raise FailedPrecondition(
                f"Entry {entry_id} is not approved. All entries must be approved before invoicing."
            )
        records.append(entry)
    return records


def create_invoice_from_time(
    db: Session,
    principal: Principal,
    entry_ids: List[str],
    hourly_rate,
    customer_id: Optional[str],
    due_date,
    company_id: Optional[str] = None,
    job_id: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()

    if not principal.is_manager:
        raise PermissionDenied("Only admin or manager can create invoices")
    company_id = company_id or principal.company_id
    if not principal.company_id or principal.company_id != company_id:
        raise PermissionDenied("Company mismatch")

    if not entry_ids or not isinstance(entry_ids, list):
        raise InvalidArgument("timeEntryIds must be a non-empty array")
    if len(entry_ids) > settings.invoice_max_entries:
        raise InvalidArgument(f"Cannot invoice more than {settings.invoice_max_entries} entries at once")
    if len(set(entry_ids)) != len(entry_ids):
        raise InvalidArgument("timeEntryIds must not contain duplicates")
    if not customer_id:
        raise InvalidArgument("Missing required parameter: customerId")
    rate = _parse_rate(hourly_rate)
    due = _parse_due_date(due_date)

    rows = {row.id: row for row in db.query(TimeEntry).filter(TimeEntry.id.in_(entry_ids)).all()}
    records = validate_entries_for_invoice(rows, entry_ids, company_id)

    job_ids = {r.job_id for r in records}
    job_names = {job.id: job.name for job in db.query(Job).filter(Job.id.in_(job_ids)).all()}
    line_items = build_line_items(records, rate, job_names)
    total_hours = sum(item["quantity"] for item in line_items)
    total_amount = sum((Decimal(item["amount"]) for item in line_items), Decimal("0"))

    invoice_id = str(uuid.uuid4())
    try:
        db.add(Invoice(
            id=invoice_id,
            company_id=company_id,
            customer_id=customer_id,
            job_id=job_id,
            status="pending",
            currency=settings.invoice_currency,
            hourly_rate=money(rate),
            total_hours=total_hours,
            total_amount=money(total_amount),
            line_items=line_items,
            time_entry_ids=list(entry_ids),
            due_date=due,
            notes=notes,
            created_by=principal.uid,
            created_at=now,
        ))
        db.flush()

        for record in records:
            locked = db.execute(
                update(TimeEntry)
                .where(
                    TimeEntry.id == record.id,
                    TimeEntry.invoice_id.is_(None),
                    TimeEntry.approved.is_(True),
                    TimeEntry.status == TimeEntryStatus.COMPLETED,
                )
                .values(
                    invoice_id=invoice_id,
                    invoiced_at=now,
                    status=TimeEntryStatus.INVOICED,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if locked != 1:
                raise FailedPrecondition(
                    f"Entry {record.id} changed while invoicing (already invoiced or unapproved)"
                )

        create_audit_log(
            db,
            action="invoice_from_time",
            actor_uid=principal.uid,
            actor_role=principal.role,
            target_type="invoice",
            target_id=invoice_id,
            company_id=company_id,
            details={
                "timeEntryIds": list(entry_ids),
                "totalHours": total_hours,
                "totalAmount": str(money(total_amount)),
                "hourlyRate": str(money(rate)),
                "customerId": customer_id,
            },
            timestamp=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "invoice_created",
        invoiceId=invoice_id,
        companyId=company_id,
        createdBy=principal.uid,
        entries=len(records),
        totalHours=total_hours,
    )
    return {
        "ok": True,
        "invoiceId": invoice_id,
        "totalHours": total_hours,
        "totalAmount": float(money(total_amount)),
        "entriesLocked": len(records),
    }
