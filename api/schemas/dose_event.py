"""
Dose Event Schemas
Pydantic models for dose event actions and the today view
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, TypeAdapter, ValidationError, field_validator

from models import DoseStatus


_DATETIME = TypeAdapter(datetime)


# ==================== REQUEST SCHEMAS ====================

class DoseTaken(BaseModel):
    """Schema for marking a dose taken"""
    taken_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("taken_at", mode="before")
    @classmethod
    def _unreadable_taken_at_means_now(cls, value: Any) -> Optional[datetime]:
        if value is None or isinstance(value, datetime):
            return value
        try:
            return _DATETIME.validate_python(value)
        except ValidationError:
            return None


class DoseSnooze(BaseModel):
    minutes: int = Field(..., description="1-480 minutes")
    reason: Optional[str] = Field(None, max_length=500)


class DoseSkip(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)


class DoseReschedule(BaseModel):
    new_date_time: datetime
    reason: str = Field(..., min_length=1, max_length=500)
    is_one_time: bool = True


class DoseMissed(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class DoseCorrection(BaseModel):
    new_status: DoseStatus
    reason: str = Field(..., min_length=1, max_length=500)


# ==================== RESPONSE SCHEMAS ====================

class DoseEventResponse(BaseModel):
    """Schema for dose event response"""
    id: int
    schedule_id: int
    medication_id: int
    patient_id: str
    scheduled_at: datetime
    original_scheduled_at: datetime
    status: DoseStatus
    taken_at: Optional[datetime] = None
    taken_by: Optional[str] = None
    is_on_time: Optional[bool] = None
    minutes_late: Optional[int] = None
    was_late: bool = False
    notes: Optional[str] = None
    missed_at: Optional[datetime] = None
    missed_by: Optional[str] = None
    grace_minutes_applied: Optional[int] = None
    snooze_count: int = 0
    snooze_history: List[Dict[str, Any]] = Field(default_factory=list)
    skip_history: List[Dict[str, Any]] = Field(default_factory=list)
    reschedule_history: List[Dict[str, Any]] = Field(default_factory=list)
    status_history: List[Dict[str, Any]] = Field(default_factory=list)
    version: int

    model_config = ConfigDict(from_attributes=True)


class DoseEventList(BaseModel):
    events: List[DoseEventResponse]
    total: int


class BucketedDose(BaseModel):
    event: DoseEventResponse
    medication_name: Optional[str] = None
    minutes_until_due: int
    local_time: str

    model_config = ConfigDict(from_attributes=True)


class TodayBuckets(BaseModel):
    """Today's doses grouped into time buckets"""
    patient_id: str
    date: str
    timezone: str
    buckets: Dict[str, List[BucketedDose]]
    summary: Dict[str, int]
