"""
Medication Schemas
Pydantic models for medication and schedule API requests and responses
"""

from typing import Optional, List
from datetime import datetime, date
from pydantic import BaseModel, Field, ConfigDict

from models import Frequency


# ==================== REQUEST SCHEMAS ====================

class MedicationCreate(BaseModel):
    """Schema for creating a new medication"""
    patient_id: Optional[str] = Field(None, description="Defaults to the caller")
    name: str = Field(..., min_length=1, max_length=255)
    dosage: str = Field(..., min_length=1, max_length=100)
    generic_name: Optional[str] = Field(None, max_length=255)
    instructions: Optional[str] = None
    purpose: Optional[str] = Field(None, max_length=255)
    is_prn: bool = False


class MedicationUpdate(BaseModel):
    """Schema for updating medication"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    dosage: Optional[str] = Field(None, min_length=1, max_length=100)
    generic_name: Optional[str] = Field(None, max_length=255)
    instructions: Optional[str] = None
    purpose: Optional[str] = Field(None, max_length=255)
    is_prn: Optional[bool] = None


class ScheduleCreate(BaseModel):
    """Schema for creating a medication schedule"""
    medication_id: int
    frequency: Frequency
    times_of_day: List[str] = Field(default_factory=list, description="HH:MM in the patient's timezone")
    days_of_week: List[int] = Field(default_factory=list, description="0=Monday .. 6=Sunday")
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_indefinite: Optional[bool] = None


class ScheduleUpdate(BaseModel):
    frequency: Optional[Frequency] = None
    times_of_day: Optional[List[str]] = None
    days_of_week: Optional[List[int]] = None
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    end_date: Optional[date] = None
    is_indefinite: Optional[bool] = None


class SchedulePause(BaseModel):
    paused_until: Optional[datetime] = None


# ==================== RESPONSE SCHEMAS ====================

class MedicationResponse(BaseModel):
    """Schema for medication response"""
    id: int
    patient_id: str
    name: str
    dosage: str
    generic_name: Optional[str] = None
    instructions: Optional[str] = None
    purpose: Optional[str] = None
    is_prn: bool = False
    is_active: bool = True
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MedicationList(BaseModel):
    """List of medications"""
    medications: List[MedicationResponse]
    total: int
    active_count: int


class MedicationDeactivated(BaseModel):
    medication: MedicationResponse
    schedules_deactivated: int
    events_cancelled: int


class ScheduleResponse(BaseModel):
    """Schema for schedule response"""
    id: int
    medication_id: int
    patient_id: str
    frequency: Frequency
    times_of_day: List[str] = Field(default_factory=list)
    days_of_week: List[int] = Field(default_factory=list)
    day_of_month: Optional[int] = None
    start_date: date
    end_date: Optional[date] = None
    is_indefinite: bool = True
    is_active: bool = True
    is_paused: bool = False
    paused_until: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ScheduleWithExpansion(BaseModel):
    schedule: ScheduleResponse
    events_created: int
    events_cancelled: int = 0


class ExpansionResult(BaseModel):
    patient_id: str
    events_created: int
