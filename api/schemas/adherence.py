"""
Adherence Schemas
Pydantic models for adherence, preferences, grace periods and detection
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field

from models import WorkSchedule


# ==================== ADHERENCE ====================

class AdherenceMetrics(BaseModel):
    total_doses: int
    taken: int
    late: int
    missed: int
    skipped: int
    pending: int
    on_time: int
    adherence_rate: float
    on_time_rate: float
    missed_rate: float
    skipped_rate: float
    average_minutes_late: float


class MedicationAdherence(AdherenceMetrics):
    medication_id: int
    medication_name: Optional[str] = None
    is_poor_adherence: bool


class DailyAdherence(BaseModel):
    date: str
    total_doses: int
    taken: int
    missed: int
    skipped: int
    adherence_rate: float


class AdherenceSummary(AdherenceMetrics):
    """Adherence over a window"""
    patient_id: str
    start: datetime
    end: datetime
    is_poor_adherence: bool
    medications: List[MedicationAdherence]
    daily: List[DailyAdherence]
    current_streak: int
    best_streak: int
    streak_start: Optional[str] = None


# ==================== PREFERENCES ====================

class TimeSlotRange(BaseModel):
    start: str = Field(..., pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")
    end: str = Field(..., pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")
    default_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")


class PreferencesUpdate(BaseModel):
    work_schedule: Optional[WorkSchedule] = None
    time_slots: Optional[Dict[str, TimeSlotRange]] = None


class PreferencesResponse(BaseModel):
    patient_id: str
    work_schedule: WorkSchedule
    time_slots: Dict[str, TimeSlotRange]
    is_default: bool
    updated_at: Optional[datetime] = None


# ==================== GRACE PERIODS ====================

class GracePeriodUpdate(BaseModel):
    default_grace_minutes: Optional[int] = Field(None, ge=0, le=1440)
    slot_grace_minutes: Optional[Dict[str, int]] = None
    medication_overrides: Optional[Dict[str, int]] = None
    medication_type_rules: Optional[Dict[str, int]] = Field(None, description="critical, standard, vitamin, prn")
    weekend_multiplier: Optional[float] = Field(None, ge=1.0, le=5.0)
    holiday_multiplier: Optional[float] = Field(None, ge=1.0, le=5.0)


class GracePeriodResponse(BaseModel):
    patient_id: str
    default_grace_minutes: Optional[int] = None
    slot_grace_minutes: Dict[str, int]
    medication_overrides: Dict[str, int]
    medication_type_rules: Dict[str, int] = Field(default_factory=dict)
    weekend_multiplier: Optional[float] = None
    holiday_multiplier: Optional[float] = None
    system_default_minutes: int
    system_slot_minutes: Dict[str, int] = Field(default_factory=dict)
    system_type_minutes: Dict[str, int] = Field(default_factory=dict)
    system_weekend_multiplier: float = 1.0
    system_holiday_multiplier: float = 1.0
    updated_at: Optional[datetime] = None


# ==================== DETECTION ====================

class DetectionRun(BaseModel):
    processed: int
    missed: int
    within_grace: int
    skipped_by_race: int
    patients_processed: int
    errors: List[Dict[str, Any]]
    deferred_patients: List[str]
    duration_seconds: float
    started_at: str
