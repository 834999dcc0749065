import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings
from ..errors import Unauthenticated, PermissionDenied
from ..logging import bind_caller


http_bearer = HTTPBearer(auto_error=False)

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_WORKER = "worker"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as described by identity-provider claims"""
    uid: str
    company_id: Optional[str]
    role: str = ROLE_WORKER
    admin_claim: bool = False

    @property
    def is_admin(self) -> bool:
        return self.admin_claim or self.role == ROLE_ADMIN

    @property
    def is_manager(self) -> bool:
        return self.is_admin or self.role == ROLE_MANAGER


def _create_token(sub: str, ttl_seconds: int, extra: Optional[dict] = None, secret: Optional[str] = None) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(
    user_id: str,
    company_id: Optional[str],
    role: str = ROLE_WORKER,
    admin: bool = False,
) -> str:
    return _create_token(
        user_id,
        settings.jwt_ttl_seconds,
        extra={"company_id": company_id, "role": role, "admin": admin},
    )


def create_attestation_token(app_id: str, ttl_seconds: int = 60 * 60) -> str:
    return _create_token(app_id, ttl_seconds, extra={"app_id": app_id}, secret=settings.attestation_secret)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token")


def principal_from_claims(payload: dict) -> Principal:
    uid = payload.get("sub")
    if not uid:
        raise Unauthenticated("Invalid subject")
    return Principal(
        uid=str(uid),
        company_id=payload.get("company_id"),
        role=(payload.get("role") or ROLE_WORKER).lower(),
        admin_claim=payload.get("admin") is True,
    )


def ensure_attestation(
    x_attestation_token: Optional[str] = Header(default=None, alias="X-Attestation-Token"),
) -> None:
    """Reject requests that do not carry a valid attestation token."""
    if not settings.attestation_required:
        return
    if not x_attestation_token:
        raise Unauthenticated("Request attestation required")
    try:
        payload = jwt.decode(x_attestation_token, settings.attestation_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid attestation token")
    app_id = payload.get("app_id")
    if settings.attestation_app_ids and app_id not in settings.attestation_app_ids:
        raise Unauthenticated("Unrecognized app")


async def get_current_principal(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    _attested: None = Depends(ensure_attestation),
) -> Principal:
    if creds is None:
        raise Unauthenticated("Not authenticated")
    principal = principal_from_claims(decode_token(creds.credentials))
    bind_caller(principal.uid, principal.company_id, principal.role)
    return principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise PermissionDenied("Admin role required")
    return principal


def require_manager(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_manager:
        raise PermissionDenied("Admin or manager role required")
    return principal
