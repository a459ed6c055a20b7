"""
Pytest fixtures for testing
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from crm_reminders.config import Settings
from crm_reminders.infrastructure.db import models  # noqa: F401  (registers tables)
from crm_reminders.infrastructure.db.session import Base


@pytest.fixture
def db_engine():
    """Create in-memory SQLite engine for tests, shared across threads (TestClient)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Session:
    """Create database session for tests"""
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment: UTC, in-app only, no SMTP, no VAPID."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite:///:memory:",
        REMINDER_TIMEZONE="UTC",
        REMINDER_SCHEDULER_ENABLED=False,
        REMINDER_NOTIFICATION_TYPE="in_app",
        REMINDER_SCAN_TIMEOUT_SECONDS=0,
        VAPID_PUBLIC_KEY="",
        VAPID_PRIVATE_KEY="",
        EMAIL_SMTP_HOST="",
    )
