"""
Pytest Configuration and Shared Fixtures
========================================

This module provides shared fixtures for all CareCircle tests.
Fixtures include database sessions, test clients, users, medications and
schedules.
"""

import os
import sys
from datetime import datetime, date, timedelta
from typing import Generator, Dict
from unittest.mock import AsyncMock

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("MISSED_DETECTION_ENABLED", "false")
os.environ.setdefault("SENDGRID_API_KEY", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base
from api.deps import get_db
from models import (
    UserProfile, Medication, MedicationSchedule, DoseEvent, Relationship,
    UserType, Frequency, DoseStatus, AccessLevel, RelationshipStatus
)
from services.access_service import derive_permissions, relationship_id_for
from tools.notification_service import NotificationResult
from app import app


# Fixed clock used across tests: Wednesday 2024-03-06 08:00 UTC
NOW = datetime(2024, 3, 6, 8, 0)


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a test database session"""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine
    )

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with database override"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def auth_headers(user: UserProfile) -> Dict[str, str]:
    """Identity headers normally set by the upstream identity proxy"""
    return {"X-User-Id": user.id, "X-User-Email": user.email}


# ==================== USER FIXTURES ====================

def make_user(
    db_session: Session,
    user_id: str,
    email: str,
    name: str,
    user_type: UserType = UserType.PATIENT,
    timezone: str = "UTC"
) -> UserProfile:
    user = UserProfile(
        id=user_id,
        email=email,
        name=name,
        user_type=user_type,
        timezone=timezone,
        linked_patient_ids=[],
        family_member_ids=[]
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def patient(db_session: Session) -> UserProfile:
    """Patient who owns the medications"""
    return make_user(db_session, "patient-1", "pat@example.com", "Pat Patient")


@pytest.fixture
def family_member(db_session: Session) -> UserProfile:
    """Registered user who has not been invited yet"""
    return make_user(db_session, "family-1", "fam@example.com", "Fran Family")


@pytest.fixture
def other_user(db_session: Session) -> UserProfile:
    """Unrelated user with no access to the patient"""
    return make_user(db_session, "stranger-1", "stranger@example.com", "Sam Stranger")


def link_family(
    db_session: Session,
    patient: UserProfile,
    member: UserProfile,
    access_level: AccessLevel = AccessLevel.FULL,
    permissions: Dict[str, bool] = None
) -> Relationship:
    """Active relationship with reciprocal links already in place"""
    relationship = Relationship(
        id=relationship_id_for(patient.id, member.email),
        patient_id=patient.id,
        family_member_id=member.id,
        family_member_email=member.email,
        family_member_name=member.name,
        access_level=access_level,
        permissions=derive_permissions(access_level, permissions),
        status=RelationshipStatus.ACTIVE,
        invited_at=NOW - timedelta(days=2),
        accepted_at=NOW - timedelta(days=1)
    )
    db_session.add(relationship)
    member.user_type = UserType.FAMILY_MEMBER
    member.linked_patient_ids = [patient.id]
    member.primary_patient_id = patient.id
    patient.family_member_ids = [member.id]
    db_session.commit()
    db_session.refresh(relationship)
    return relationship


# ==================== MEDICATION FIXTURES ====================

@pytest.fixture
def medication(db_session: Session, patient: UserProfile) -> Medication:
    """Create and return a test medication owned by the patient"""
    medication = Medication(
        patient_id=patient.id,
        name="Sertraline",
        generic_name="sertraline hydrochloride",
        dosage="500mg",
        instructions="Take with meals",
        purpose="Mood",
        is_active=True,
        created_by=patient.id
    )
    db_session.add(medication)
    db_session.commit()
    db_session.refresh(medication)
    return medication


@pytest.fixture
def schedule(db_session: Session, patient: UserProfile, medication: Medication) -> MedicationSchedule:
    """Once-daily 08:00 schedule starting a few days before NOW"""
    schedule = MedicationSchedule(
        medication_id=medication.id,
        patient_id=patient.id,
        frequency=Frequency.ONCE_DAILY,
        times_of_day=["08:00"],
        days_of_week=[],
        start_date=NOW.date() - timedelta(days=3),
        is_indefinite=True,
        is_active=True,
        is_paused=False,
        created_by=patient.id
    )
    db_session.add(schedule)
    db_session.commit()
    db_session.refresh(schedule)
    return schedule


def make_event(
    db_session: Session,
    schedule: MedicationSchedule,
    scheduled_at: datetime,
    status: DoseStatus = DoseStatus.SCHEDULED,
    **fields
) -> DoseEvent:
    event = DoseEvent(
        schedule_id=schedule.id,
        medication_id=schedule.medication_id,
        patient_id=schedule.patient_id,
        scheduled_at=scheduled_at,
        original_scheduled_at=scheduled_at,
        status=status,
        snooze_count=0,
        snooze_history=[],
        skip_history=[],
        reschedule_history=[],
        status_history=[],
        version=1,
        **fields
    )
    db_session.add(event)
    db_session.commit()
    db_session.refresh(event)
    return event


@pytest.fixture
def dose_event(db_session: Session, schedule: MedicationSchedule) -> DoseEvent:
    """Scheduled dose due at NOW"""
    return make_event(db_session, schedule, NOW)


# ==================== MOCK FIXTURES ====================

@pytest.fixture
def mock_notifier():
    """Notifier that records invitations instead of sending them"""
    notifier = AsyncMock()
    notifier.send_invitation = AsyncMock(
        side_effect=lambda message: NotificationResult(
            success=True,
            recipient=message.to_email,
            message_id="test-message-id",
            delivered_at=NOW
        )
    )
    return notifier


# ==================== MARKERS ====================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "api: mark test as an API test")
    config.addinivalue_line("markers", "database: mark test as requiring database")
