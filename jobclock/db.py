from contextlib import contextmanager

from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy import create_engine
from .config import settings


def build_engine(database_url: str):
    if database_url.startswith("sqlite"):
        # SQLite serializes writers; wait on the lock instead of failing fast
        return create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    # Configure connection pool for better performance
    return create_engine(
        database_url,
        future=True,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


engine = build_engine(settings.database_url)

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope():
    """Session for cron jobs and scripts running outside a request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
