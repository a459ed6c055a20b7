"""
Database session management (SQLAlchemy)

Sessions are opened in two places: per HTTP request (get_db) and per
background job (session_scope, used by the scheduler and the CLI).
"""
from contextlib import contextmanager
from typing import Callable, Iterator

import psycopg
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session

from crm_reminders.config import Settings, get_settings


class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base for all ORM models
    """
    pass


_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def get_engine(settings: Settings | None = None) -> Engine:
    """Process-wide engine. pool_pre_ping drops connections that died between scans."""
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        _engine = create_engine(settings.get_sqlalchemy_url(), pool_pre_ping=True)
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)
    return _SessionLocal


@contextmanager
def session_scope(factory: Callable[[], Session] | None = None) -> Iterator[Session]:
    """
    Session for one background job. Uncommitted work is rolled back on error,
    the session is always closed.
    """
    db = (factory or get_session_factory())()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db() -> Iterator[Session]:
    """
    FastAPI dependency: one session per request.

    Usage:
        @router.get("/internal/reminders/status")
        def status(db: Session = Depends(get_db)):
            ...
    """
    with session_scope() as db:
        yield db


def _libpq_url(url: str) -> str:
    # psycopg.connect takes a libpq URI, not the SQLAlchemy driver form
    return url.replace("postgresql+psycopg://", "postgresql://", 1)


def check_db_connection() -> None:
    """
    Readiness probe against PostgreSQL (raw psycopg, 3s connect timeout)

    Raises:
        psycopg.OperationalError: when the database is unreachable
    """
    settings = get_settings()
    with psycopg.connect(_libpq_url(settings.DATABASE_URL), connect_timeout=3) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1;")
            cur.fetchone()
