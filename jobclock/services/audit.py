"""
Audit logging service.
Append-only audit log with integrity hashing.

Entries are added to the caller's session and committed together with the
mutation they describe.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from ..models.models import AuditLog, utcnow
from ..config import settings

SYSTEM_ACTOR = "system"


def create_audit_log(
    db: Session,
    action: str,
    actor_uid: str,
    target_type: str,
    target_id: str,
    company_id: str,
    details: Optional[Dict[str, Any]] = None,
    actor_role: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Stage an append-only audit log entry in the current transaction.

    Args:
        db: Database session (not committed here)
        action: Action performed (clock_in|clock_out|approve_time_entry|...)
        actor_uid: Caller uid, or "system" for scheduled work
        target_type: Type of entity (time_entry|invoice)
        target_id: Entity ID
        company_id: Owning company
        details: Before/after values and other context
        actor_role: Role claim of the actor (admin|manager|worker|system)
        timestamp: Event time (defaults to now, UTC)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        Staged AuditLog object
    """
    timestamp_utc = timestamp or utcnow()

    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    audit_log = AuditLog(
        action=action,
        actor_uid=actor_uid,
        actor_role=actor_role,
        target_type=target_type,
        target_id=target_id,
        company_id=company_id,
        timestamp_utc=timestamp_utc,
        details=details,
        integrity_hash=compute_integrity_hash(
            action, actor_uid, target_type, target_id, company_id,
            timestamp_utc, details, integrity_secret,
        ),
    )

    db.add(audit_log)
    return audit_log


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def compute_integrity_hash(
    action: str,
    actor_uid: str,
    target_type: str,
    target_id: str,
    company_id: str,
    timestamp_utc: datetime,
    details: Optional[Dict[str, Any]],
    integrity_secret: str,
) -> Optional[str]:
    if not integrity_secret:
        return None
    # Create canonical JSON representation
    canonical_data = {
        "action": action,
        "actor_uid": actor_uid,
        "target_type": target_type,
        "target_id": str(target_id),
        "company_id": company_id,
        "timestamp_utc": _naive_utc(timestamp_utc).isoformat(),
        "details": details,
    }
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)

    hash_input = f"{canonical_json}:{integrity_secret}"
    return hashlib.sha256(hash_input.encode()).hexdigest()


def verify_audit_log(audit_log: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """Recompute the integrity hash of a stored entry and compare."""
    expected = compute_integrity_hash(
        audit_log.action,
        audit_log.actor_uid,
        audit_log.target_type,
        audit_log.target_id,
        audit_log.company_id,
        audit_log.timestamp_utc,
        audit_log.details,
        integrity_secret if integrity_secret is not None else settings.jwt_secret,
    )
    return expected == audit_log.integrity_hash


def get_audit_logs(
    db: Session,
    company_id: str,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
) -> list:
    """
    Get audit logs for one company with optional filtering, newest first.
    """
    query = db.query(AuditLog).filter(AuditLog.company_id == company_id)

    if target_type:
        query = query.filter(AuditLog.target_type == target_type)

    if target_id:
        query = query.filter(AuditLog.target_id == target_id)

    if action:
        query = query.filter(AuditLog.action == action)

    query = query.order_by(AuditLog.timestamp_utc.desc())
    query = query.limit(limit).offset(offset)

    return query.all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Args:
        before: Before state
        after: After state

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    all_keys = set(before.keys()) | set(after.keys())

    for key in all_keys:
        before_val = before.get(key)
        after_val = after.get(key)

        if before_val != after_val:
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }

    return diff
