from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator
from pydantic.alias_generators import to_camel

from ..services.records import as_utc


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


# ----- Clock -----
class ClockInRequest(CamelModel):
    job_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    accuracy: Optional[float] = None
    client_event_id: Optional[str] = None
    device_id: Optional[str] = None


class ClockInResponse(CamelModel):
    entry_id: str
    ok: bool


class ClockOutRequest(CamelModel):
    time_entry_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    accuracy: Optional[float] = None
    client_event_id: Optional[str] = None
    device_id: Optional[str] = None


class ClockOutResponse(CamelModel):
    ok: bool
    warning: Optional[str] = None


# ----- Entries -----
class TimeEntryOut(CamelModel):
    id: str
    company_id: str
    user_id: str
    job_id: str
    status: str
    state: Optional[str] = None
    clock_in_at: datetime
    clock_out_at: Optional[datetime] = None
    clock_in_geofence_valid: Optional[bool] = None
    clock_out_geofence_valid: Optional[bool] = None
    exception_tags: List[str] = []
    approved: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    requires_reapproval: Optional[bool] = False
    invoice_id: Optional[str] = None
    auto_clock_out: Optional[bool] = False
    notes: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

    @field_validator("clock_in_at", "clock_out_at", "approved_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    @field_validator("exception_tags", mode="before")
    @classmethod
    def _tags(cls, value):
        return list(value or [])


class EditTimeEntryRequest(CamelModel):
    edit_reason: Optional[str] = None
    clock_in_at: Optional[datetime] = None
    clock_out_at: Optional[datetime] = None
    notes: Optional[str] = None
    force: bool = False


class EditTimeEntryResponse(CamelModel):
    ok: bool
    has_overlap: bool
    requires_reapproval: bool


class DisputeRequest(CamelModel):
    reason: Optional[str] = None


class DisputeResponse(CamelModel):
    ok: bool
    exception_tags: List[str]


# ----- Admin -----
class BulkApproveRequest(CamelModel):
    entry_ids: List[str] = []


class SkippedEntry(CamelModel):
    entry_id: str
    reason: str


class BulkApproveResponse(CamelModel):
    approved_count: int
    already_approved_count: int
    skipped_mismatch_count: int
    not_found_count: int = 0
    not_completed_count: int = 0
    skipped: List[SkippedEntry] = []


class AutoClockoutRequest(CamelModel):
    dry_run: bool = False


class AutoClockoutEntry(CamelModel):
    entry_id: str
    company_id: str
    user_id: str
    job_id: str
    clock_in_at: datetime
    would_clock_out_at: datetime
    tags: List[str]


class AutoClockoutResponse(CamelModel):
    processed: int
    dry_run: bool
    entries: List[AutoClockoutEntry] = []


# ----- Invoices -----
class InvoiceFromTimeRequest(CamelModel):
    time_entry_ids: List[str] = []
    hourly_rate: Optional[float] = None
    customer_id: Optional[str] = None
    due_date: Optional[datetime] = None
    company_id: Optional[str] = None
    job_id: Optional[str] = None
    notes: Optional[str] = None


class InvoiceFromTimeResponse(CamelModel):
    ok: bool
    invoice_id: str
    total_hours: float
    total_amount: float
    entries_locked: int


# ----- Audit -----
class AuditLogOut(CamelModel):
    id: str
    action: str
    actor_uid: str
    actor_role: Optional[str] = None
    target_type: str
    target_id: str
    company_id: str
    timestamp_utc: datetime
    details: Optional[dict] = None
    verified: bool = False

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

    @field_validator("timestamp_utc")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)
