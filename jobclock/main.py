import os
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine
from .errors import InvalidArgument, TimeclockError, timeclock_error_handler
from .logging import setup_logging, RequestIdMiddleware
from .routes.timeclock import router as timeclock_router
from .routes.time_entries import router as time_entries_router
from .routes.admin import router as admin_router
from .routes.invoices import router as invoices_router


logger = structlog.get_logger(__name__)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request"
    return await timeclock_error_handler(request, InvalidArgument(message))


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Errors
    app.add_exception_handler(TimeclockError, timeclock_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Routers
    app.include_router(timeclock_router)
    app.include_router(time_entries_router)
    app.include_router(admin_router)
    app.include_router(invoices_router)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("startup_tables_ready", tables=sorted(Base.metadata.tables.keys()))

    return app


app = create_app()
