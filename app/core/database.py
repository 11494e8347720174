"""Database configuration and session management.

Features:
- Shared declarative Base for the deadline, risk and notification tables
- Slow query logging
- Context-managed sessions that commit or roll back as a unit, used for
  every notification state transition
"""

import logging
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

if settings.database_url.startswith("sqlite:///"):
    db_path = settings.database_url.replace("sqlite:///", "")
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

engine_args: dict[str, Any] = {
    "echo": settings.debug and settings.enable_query_logging,
}
if settings.database_url.startswith("sqlite"):
    engine_args["connect_args"] = {"check_same_thread": False}
else:
    engine_args.update({
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    })

engine = create_engine(settings.database_url, **engine_args)


@event.listens_for(engine, "before_cursor_execute")
def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    """Capture query start time for performance monitoring."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


@event.listens_for(engine, "after_cursor_execute")
def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    """Log slow queries based on configured threshold."""
    start_time = conn.info["query_start_time"].pop()
    total_time = (time.perf_counter() - start_time) * 1000

    if total_time > settings.slow_query_threshold_ms:
        logger.warning(f"Slow query detected ({total_time:.2f}ms): {statement[:200]}...")


# Loaded attributes stay readable after the unit of work closes
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency for database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for a single atomic unit of work.

    Commits when the block exits cleanly, rolls back otherwise.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def make_session_context(session_factory: sessionmaker):
    """Build a get_db_context-style context manager over another sessionmaker."""

    @contextmanager
    def _context() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return _context


def init_db(bind=None) -> None:
    """Initialize database tables."""
    # Import models to register them with Base
    from app import models  # noqa: F401

    # Indexes are declared in each model's __table_args__
    Base.metadata.create_all(bind=bind or engine)


def get_db_stats(db: Session) -> dict[str, Any]:
    """Get row counts for the engine's tables."""
    stats = {}
    for table in ["compliance_deadlines", "risk_assessments", "alert_notifications", "delivery_attempts"]:
        try:
            result = db.execute(text(f"SELECT COUNT(*) FROM {table}"))
            stats[f"{table}_count"] = result.scalar()
        except Exception:
            stats[f"{table}_count"] = None
    return stats
