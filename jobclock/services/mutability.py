"""
Mutability guard for time entries.

Every field-editing path calls ensure_mutable() first. Approved or invoiced
entries are frozen; only an admin passing force=True gets through, and the
caller must record the bypass in its audit entry.
"""
from typing import Optional

import structlog

from ..auth.security import Principal
from ..errors import FailedPrecondition, PermissionDenied

logger = structlog.get_logger(__name__)


def is_frozen(entry) -> bool:
    return bool(entry.approved) or entry.invoice_id is not None


def ensure_mutable(entry, principal: Optional[Principal] = None, force: bool = False) -> bool:
    """
    Raise unless the entry may be edited.

    Returns True when the edit only proceeds because an admin forced it.
    """
    if not is_frozen(entry):
        return False

    if not force:
        if entry.invoice_id is not None:
            raise FailedPrecondition(
                f"Cannot modify invoiced time entry (invoice: {entry.invoice_id}). Contact admin."
            )
        raise FailedPrecondition("Cannot modify approved time entry. Contact admin to unapprove first.")

    if principal is None or not principal.is_admin:
        raise PermissionDenied("Only admin can force-edit approved/invoiced entries")

    logger.warning(
        "mutability_guard_bypassed",
        entryId=entry.id,
        companyId=entry.company_id,
        actorUid=principal.uid,
        approved=bool(entry.approved),
        invoiceId=entry.invoice_id,
    )
    return True


def guard_audit_details(entry, bypassed: bool) -> dict:
    """Audit fields every guarded edit records."""
    return {
        "forceEdit": bypassed,
        "wasApproved": bool(entry.approved),
        "invoiced": entry.invoice_id is not None,
    }
