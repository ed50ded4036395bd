from typing import Generator
import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

# Import centralized configuration
from newsletter.config import settings

DEBUG_SQL = os.getenv("DEBUG_SQL", "false").lower() == "true"


def normalize_database_url(url: str) -> str:
    if url and url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def create_db_engine(url: str) -> Engine:
    """Create an engine with pool settings suited to the backing database."""
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        # SQLite serializes writers itself; wait on its lock instead of failing fast
        return create_engine(
            url,
            echo=DEBUG_SQL,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    # Production-ready connection pool configuration
    return create_engine(
        url,
        echo=DEBUG_SQL,
        pool_size=20,  # Normal connections (adjust based on load)
        max_overflow=40,  # Burst capacity (total = 60 connections max)
        pool_timeout=30,  # Wait 30s for connection before failing
        pool_recycle=1800,  # Recycle connections every 30 minutes
        pool_pre_ping=True,  # Verify connections before use (prevents stale connections)
    )


engine = create_db_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_session_factory() -> sessionmaker:
    """Dependency returning the factory used to open independent transactions.

    The idempotency store needs to begin its own transactions rather than share
    a request-scoped session, so it is handed the factory instead of a session.
    """
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Request-scoped database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None):
    """Create tables for development and tests. Production uses Alembic."""
    # Import all models here so that Base knows about them
    from newsletter.models import idempotency, issue_delivery, newsletter_issue, subscription  # noqa: F401

    try:
        Base.metadata.create_all(bind=bind or engine)
    except (ProgrammingError, OperationalError) as e:
        # Ignore duplicate index/table errors - these are expected when migrations have run
        error_msg = str(e.orig) if hasattr(e, "orig") else str(e)
        if "already exists" not in error_msg.lower() and "duplicate" not in error_msg.lower():
            raise
