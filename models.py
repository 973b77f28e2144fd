"""
Database Models
SQLAlchemy ORM models for CareCircle
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, Text, Date, Enum, Index, UniqueConstraint, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum as PyEnum

from config import TableNames
from database import Base


# ==================== ENUMS ====================

class UserType(str, PyEnum):
    """Role tag on a user profile"""
    PATIENT = "patient"
    FAMILY_MEMBER = "family_member"


class Frequency(str, PyEnum):
    """Recurrence tier of a medication schedule"""
    ONCE_DAILY = "once_daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    AS_NEEDED = "as_needed"


# Number of times of day each daily tier requires
DAILY_DOSE_COUNTS = {
    Frequency.ONCE_DAILY: 1,
    Frequency.TWICE_DAILY: 2,
    Frequency.THREE_TIMES_DAILY: 3,
    Frequency.FOUR_TIMES_DAILY: 4,
}


class DoseStatus(str, PyEnum):
    """Status of a single dose event"""
    SCHEDULED = "scheduled"
    TAKEN = "taken"
    LATE = "late"
    SKIPPED = "skipped"
    MISSED = "missed"
    CANCELLED = "cancelled"


TERMINAL_DOSE_STATUSES = frozenset({
    DoseStatus.TAKEN,
    DoseStatus.LATE,
    DoseStatus.SKIPPED,
    DoseStatus.MISSED,
    DoseStatus.CANCELLED,
})


class RelationshipStatus(str, PyEnum):
    """Lifecycle of a patient -> family member sharing link"""
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"


class AccessLevel(str, PyEnum):
    """Named permission presets offered when inviting"""
    FULL = "full"
    VIEW_ONLY = "view_only"
    LIMITED = "limited"


class Capability(str, PyEnum):
    """Single permission flag within a relationship's permission set"""
    CAN_VIEW = "can_view"
    CAN_CREATE = "can_create"
    CAN_EDIT = "can_edit"
    CAN_DELETE = "can_delete"
    CAN_CLAIM_RESPONSIBILITY = "can_claim_responsibility"
    CAN_MANAGE_FAMILY = "can_manage_family"
    CAN_VIEW_MEDICAL_DETAILS = "can_view_medical_details"
    CAN_RECEIVE_NOTIFICATIONS = "can_receive_notifications"


class TimeSlot(str, PyEnum):
    """Time-of-day slots used for grouping and grace periods"""
    MORNING = "morning"
    NOON = "noon"
    EVENING = "evening"
    BEDTIME = "bedtime"


class WorkSchedule(str, PyEnum):
    STANDARD = "standard"
    NIGHT_SHIFT = "night_shift"


class MedicationType(str, PyEnum):
    """Grace-period class of a medication"""
    CRITICAL = "critical"
    STANDARD = "standard"
    VITAMIN = "vitamin"
    PRN = "prn"


# ==================== MODELS ====================

class UserProfile(Base):
    """Authenticated user with reciprocal family links"""
    __tablename__ = TableNames.USERS

    id = Column(String(128), primary_key=True)  # Identity provider uid
    email = Column(String(255), index=True, nullable=False)
    name = Column(String(255))
    user_type = Column(Enum(UserType), default=UserType.PATIENT, nullable=False)
    timezone = Column(String(50), default="UTC")

    # Family member -> patient links
    primary_patient_id = Column(String(128))
    linked_patient_ids = Column(JSON, default=list)

    # Patient -> family member links
    family_member_ids = Column(JSON, default=list)

    repaired_at = Column(DateTime)
    repair_reason = Column(String(100))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    medications = relationship("Medication", back_populates="patient")


class Medication(Base):
    """A drug a patient takes"""
    __tablename__ = TableNames.MEDICATIONS

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(String(128), ForeignKey(f"{TableNames.USERS}.id"), nullable=False)

    name = Column(String(255), nullable=False)
    generic_name = Column(String(255))
    dosage = Column(String(100), nullable=False)  # e.g., "500mg"
    instructions = Column(Text)
    purpose = Column(String(255))
    is_prn = Column(Boolean, default=False, nullable=False)  # taken as needed

    # Status (soft-deactivated, never deleted)
    is_active = Column(Boolean, default=True, nullable=False)
    deactivated_at = Column(DateTime)
    deactivated_by = Column(String(128))

    created_by = Column(String(128))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    patient = relationship("UserProfile", back_populates="medications")
    schedules = relationship("MedicationSchedule", back_populates="medication")

    __table_args__ = (
        Index("ix_medications_patient_active", "patient_id", "is_active"),
    )


class MedicationSchedule(Base):
    """Recurrence rule for a medication"""
    __tablename__ = TableNames.SCHEDULES

    id = Column(Integer, primary_key=True, index=True)
    medication_id = Column(Integer, ForeignKey(f"{TableNames.MEDICATIONS}.id"), nullable=False)
    patient_id = Column(String(128), ForeignKey(f"{TableNames.USERS}.id"), nullable=False)

    frequency = Column(Enum(Frequency), nullable=False)
    times_of_day = Column(JSON, default=list)   # ["07:00", "19:00"] in the patient's timezone
    days_of_week = Column(JSON, default=list)   # 0=Monday .. 6=Sunday, weekly only
    day_of_month = Column(Integer)              # 1..31, monthly only

    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    is_indefinite = Column(Boolean, default=True)

    is_active = Column(Boolean, default=True, nullable=False)
    is_paused = Column(Boolean, default=False, nullable=False)
    paused_until = Column(DateTime)

    created_by = Column(String(128))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    medication = relationship("Medication", back_populates="schedules")
    dose_events = relationship("DoseEvent", back_populates="schedule")

    __table_args__ = (
        Index("ix_schedules_patient_active", "patient_id", "is_active"),
    )


class DoseEvent(Base):
    """One concrete obligation to take a dose"""
    __tablename__ = TableNames.DOSE_EVENTS

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(Integer, ForeignKey(f"{TableNames.SCHEDULES}.id"), nullable=False)
    medication_id = Column(Integer, ForeignKey(f"{TableNames.MEDICATIONS}.id"), nullable=False)
    patient_id = Column(String(128), ForeignKey(f"{TableNames.USERS}.id"), nullable=False)

    # Timing (naive UTC)
    scheduled_at = Column(DateTime, nullable=False)
    original_scheduled_at = Column(DateTime, nullable=False)

    status = Column(Enum(DoseStatus), default=DoseStatus.SCHEDULED, nullable=False)

    # Taking
    taken_at = Column(DateTime)
    taken_by = Column(String(128))
    is_on_time = Column(Boolean)
    minutes_late = Column(Integer)
    was_late = Column(Boolean, default=False)
    notes = Column(Text)

    # Missing
    missed_at = Column(DateTime)
    missed_by = Column(String(128))  # user id, or "system" for the detector
    grace_minutes_applied = Column(Integer)

    # Append-only audit trail
    snooze_count = Column(Integer, default=0, nullable=False)
    snooze_history = Column(JSON, default=list)
    skip_history = Column(JSON, default=list)
    reschedule_history = Column(JSON, default=list)
    status_history = Column(JSON, default=list)

    # Bumped on every write; compare-and-set guard
    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    schedule = relationship("MedicationSchedule", back_populates="dose_events")
    medication = relationship("Medication")

    __table_args__ = (
        UniqueConstraint("medication_id", "patient_id", "scheduled_at", name="uq_dose_event_instant"),
        Index("ix_dose_events_patient_time", "patient_id", "scheduled_at"),
        Index("ix_dose_events_status_time", "status", "scheduled_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DOSE_STATUSES


class Relationship(Base):
    """Sharing link from a patient to a family member"""
    __tablename__ = TableNames.RELATIONSHIPS

    id = Column(String(200), primary_key=True)  # "{patient_id}_{email hash}"
    patient_id = Column(String(128), ForeignKey(f"{TableNames.USERS}.id"), nullable=False)
    family_member_id = Column(String(128), index=True)  # empty until accepted
    family_member_email = Column(String(255), nullable=False, index=True)
    family_member_name = Column(String(255))
    relationship_label = Column(String(50), default="family_member")

    access_level = Column(Enum(AccessLevel), default=AccessLevel.LIMITED, nullable=False)
    permissions = Column(JSON, default=dict)
    status = Column(Enum(RelationshipStatus), default=RelationshipStatus.PENDING, nullable=False)

    # Invitation
    invitation_token = Column(String(100), unique=True, index=True)
    accepted_token = Column(String(100), index=True)  # consumed token, kept for duplicate-accept detection
    invitation_expires_at = Column(DateTime)
    invitation_message = Column(Text)
    invited_at = Column(DateTime, default=datetime.utcnow)
    accepted_at = Column(DateTime)

    # Revocation audit
    revoked_at = Column(DateTime)
    revoked_by = Column(String(128))
    revocation_reason = Column(String(255))

    # Self-heal audit
    repaired_at = Column(DateTime)
    repair_reason = Column(String(100))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_family_access_patient_status", "patient_id", "status"),
        Index("ix_family_access_member_status", "family_member_id", "status"),
    )


class GracePeriodConfig(Base):
    """Per-patient missed-dose detection tuning"""
    __tablename__ = TableNames.GRACE_PERIODS

    patient_id = Column(String(128), ForeignKey(f"{TableNames.USERS}.id"), primary_key=True)
    default_grace_minutes = Column(Integer)
    slot_grace_minutes = Column(JSON, default=dict)       # {"morning": 30, ...}
    medication_overrides = Column(JSON, default=dict)     # {"<medication_id>": 15}
    medication_type_rules = Column(JSON, default=dict)    # {"critical": 10, ...}
    weekend_multiplier = Column(Float)
    holiday_multiplier = Column(Float)

    updated_by = Column(String(128))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PatientPreferences(Base):
    """Time-of-day slot definitions for a patient"""
    __tablename__ = TableNames.PATIENT_PREFERENCES

    patient_id = Column(String(128), ForeignKey(f"{TableNames.USERS}.id"), primary_key=True)
    work_schedule = Column(Enum(WorkSchedule), default=WorkSchedule.STANDARD, nullable=False)
    # {"morning": {"start": "06:00", "end": "10:00", "default_time": "08:00"}, ...}
    time_slots = Column(JSON, default=dict)

    updated_by = Column(String(128))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
