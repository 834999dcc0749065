import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def str_pk() -> Mapped[str]:
    # Text ids so identity-provider uids and store ids share one type
    return mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeEntryStatus:
    ACTIVE = "active"
    COMPLETED = "completed"
    APPROVED = "approved"  # derived: completed + approved flag
    INVOICED = "invoiced"


class Job(Base):
    """Job site owned by a company. Read-only to the time-entry engine."""
    __tablename__ = "jobs"

    id: Mapped[str] = str_pk()
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(String(500))
    geofence: Mapped[Optional[dict]] = mapped_column(JSON)  # {lat, lng, radiusMeters}
    # Legacy flat geofence columns (pre nested-geofence rows)
    lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    radius_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Assignment(Base):
    """Worker-to-job assignment that gates clock-in eligibility"""
    __tablename__ = "assignments"

    id: Mapped[str] = str_pk()
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('idx_assignments_company_job_user', 'company_id', 'job_id', 'user_id', 'active'),
    )


class TimeEntry(Base):
    """One worker shift at one job: clock-in through invoicing"""
    __tablename__ = "time_entries"

    id: Mapped[str] = str_pk()
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("jobs.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TimeEntryStatus.ACTIVE)  # active|completed|invoiced

    clock_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    clock_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    clock_in_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_in_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_out_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_out_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_in_geofence_valid: Mapped[Optional[bool]] = mapped_column(Boolean)
    clock_out_geofence_valid: Mapped[Optional[bool]] = mapped_column(Boolean)  # NULL = unknown (auto clock-out)
    exception_tags: Mapped[list] = mapped_column(JSON, default=list)

    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    requires_reapproval: Mapped[bool] = mapped_column(Boolean, default=False)

    invoice_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("invoices.id"))
    invoiced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    client_event_id: Mapped[Optional[str]] = mapped_column(String(64))
    clock_out_client_event_id: Mapped[Optional[str]] = mapped_column(String(64))
    device_id: Mapped[Optional[str]] = mapped_column(String(128))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    auto_clock_out: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_clock_out_reason: Mapped[Optional[str]] = mapped_column(String(255))

    # Audit-only geofence inputs
    radius_used_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    accuracy_at_in_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    distance_at_in_m: Mapped[Optional[float]] = mapped_column(Numeric(12, 2))
    accuracy_at_out_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    distance_at_out_m: Mapped[Optional[float]] = mapped_column(Numeric(12, 2))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        # One open entry per worker: checked by the store at insert time
        Index(
            'uq_time_entries_one_active',
            'company_id', 'user_id',
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        UniqueConstraint('user_id', 'client_event_id', name='uq_time_entries_clock_in_event'),
        Index('idx_time_entries_company_status_in', 'company_id', 'status', 'clock_in_at'),
        Index('idx_time_entries_company_user_in', 'company_id', 'user_id', 'clock_in_at'),
    )


class Invoice(Base):
    """Invoice batched from approved time. Entry set is fixed at creation."""
    __tablename__ = "invoices"

    id: Mapped[str] = str_pk()
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String(36))
    status: Mapped[str] = mapped_column(String(20), default="pending")
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    hourly_rate: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    total_hours: Mapped[float] = mapped_column(Numeric(12, 4), nullable=False)
    total_amount: Mapped[float] = mapped_column(Numeric(14, 2), nullable=False)
    line_items: Mapped[list] = mapped_column(JSON, default=list)
    time_entry_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AuditLog(Base):
    """Append-only audit log written alongside every privileged mutation"""
    __tablename__ = "audit_logs"

    id: Mapped[str] = str_pk()
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # clock_in|clock_out|approve_time_entry|invoice_from_time|time_entry_edit|...
    actor_uid: Mapped[str] = mapped_column(String(64), nullable=False)  # "system" for the sweeper
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    target_type: Mapped[str] = mapped_column(String(50), nullable=False)  # time_entry|invoice
    target_id: Mapped[str] = mapped_column(String(36), nullable=False)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_target', 'target_type', 'target_id'),
        Index('idx_audit_company_time', 'company_id', 'timestamp_utc'),
    )


class IdempotencyRecord(Base):
    """Result of a clock operation keyed by the caller's event id"""
    __tablename__ = "idempotency_records"

    id: Mapped[str] = str_pk()
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)  # clock_in|clock_out
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_id: Mapped[Optional[str]] = mapped_column(String(36))
    result: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'operation', 'event_id', name='uq_idempotency_user_op_event'),
    )
