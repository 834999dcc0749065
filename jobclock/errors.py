"""
Error taxonomy for time-entry operations.

Every failure a caller can observe maps to one canonical code. Services raise
these directly; the app renders them as {"error": {"code", "message"}}.
"""
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse


class TimeclockError(HTTPException):
    """Base error carrying a canonical error code"""
    code = "internal"

    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)

    @property
    def message(self) -> str:
        return self.detail


class InvalidArgument(TimeclockError):
    """400 - malformed coordinates, missing fields, oversized or stale event ids"""
    code = "invalid-argument"

    def __init__(self, detail: str):
        super().__init__(status.HTTP_400_BAD_REQUEST, detail)


class Unauthenticated(TimeclockError):
    """401 - no caller identity or failed attestation"""
    code = "unauthenticated"

    def __init__(self, detail: str = "Sign in required"):
        super().__init__(status.HTTP_401_UNAUTHORIZED, detail)


class PermissionDenied(TimeclockError):
    """403 - company/role mismatch, not assigned, force-edit without admin"""
    code = "permission-denied"

    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status.HTTP_403_FORBIDDEN, detail)


class NotFound(TimeclockError):
    """404 - missing job or entry"""
    code = "not-found"

    def __init__(self, resource: str = "Resource"):
        super().__init__(status.HTTP_404_NOT_FOUND, f"{resource} not found")


class FailedPrecondition(TimeclockError):
    """412 - state does not allow the operation"""
    code = "failed-precondition"

    def __init__(self, detail: str):
        super().__init__(status.HTTP_412_PRECONDITION_FAILED, detail)


async def timeclock_error_handler(request: Request, exc: TimeclockError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.detail}},
    )
