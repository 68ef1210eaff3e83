"""
Pytest configuration and fixtures for MindFit tests.
"""

import os
import sys
from datetime import datetime
from uuid import uuid4

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import src.models  # noqa: E402, F401  -- registers every ORM model on Base.metadata
from src.models.base import Base  # noqa: E402
from src.models.referral import Referral, ReferralRead, WorkflowStatus  # noqa: E402
from src.services.workflow import state_of  # noqa: E402


# Change to project root for tests that reference relative paths
@pytest.fixture(autouse=True)
def change_to_project_root():
    """Change to project root directory for all tests."""
    original_dir = os.getcwd()
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    os.chdir(project_root)
    yield
    os.chdir(original_dir)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep deployment settings from leaking into tests."""
    for name in (
        "MINDFIT_ENV",
        "MINDFIT_AES_KEY",
        "MINDFIT_ALLOW_KEY_EXPORT",
        "PACKAGE_KMS_KEY_ID",
        "PACKAGE_EXPIRY_DAYS",
        "PRESIGNED_URL_TTL_HOURS",
        "NOTIFICATION_SENDER",
        "NOTIFICATION_RECIPIENT",
    ):
        monkeypatch.delenv(name, raising=False)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture()
def engine():
    """In-memory SQLite engine shared across threads, with all tables created."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(eng, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)


@pytest.fixture()
def sf(engine):
    """Session factory bound to the in-memory engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# =============================================================================
# Referrals
# =============================================================================

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture()
def now() -> datetime:
    return NOW


def referral_fields(status: WorkflowStatus = WorkflowStatus.REFERRAL_SUBMITTED, **overrides) -> dict:
    """Column values for a referral sitting at *status*."""
    fields = {
        "id": uuid4(),
        "client_name": "Jordan Rivera",
        "client_email": "jordan.rivera@mailbox.org",
        "client_phone": "555-0100",
        "client_age": 34,
        "presenting_concerns": "Persistent anxiety affecting work and sleep",
        "urgency": "routine",
        "insurance_provider": "Acme Health",
        "client_state": state_of(status).value,
        "workflow_status": status.value,
        "matching_attempts": 0,
        "prestage_started_at": NOW,
        "created_at": NOW,
        "last_modified_at": NOW,
    }
    fields.update(overrides)
    return fields


@pytest.fixture()
def make_referral():
    """Build a ReferralRead snapshot at a given status."""
    def _make(status: WorkflowStatus = WorkflowStatus.REFERRAL_SUBMITTED, **overrides) -> ReferralRead:
        return ReferralRead.model_validate(referral_fields(status, **overrides))
    return _make


@pytest.fixture()
def insert_referral(sf):
    """Insert a referral row at a given status and return its id."""
    def _insert(status: WorkflowStatus = WorkflowStatus.REFERRAL_SUBMITTED, **overrides):
        session = sf()
        try:
            row = Referral(**referral_fields(status, **overrides))
            session.add(row)
            session.commit()
            return row.id
        finally:
            session.close()
    return _insert
