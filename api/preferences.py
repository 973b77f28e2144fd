"""
Preferences API Router
Time slot preferences and grace period configuration
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

import models
from api.deps import get_db, get_current_user, services
from api.schemas.common import ApiResponse, ok
from api.schemas.adherence import (
    PreferencesUpdate,
    PreferencesResponse,
    GracePeriodUpdate,
    GracePeriodResponse,
)


router = APIRouter(prefix="/preferences", tags=["preferences"])


@router.get("/", response_model=ApiResponse[PreferencesResponse])
async def get_preferences(
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    preferences_service = services.get_preferences_service()
    preferences = await preferences_service.get_preferences(patient_id or user.id, user.id, db=db)
    return ok(PreferencesResponse(**preferences))


@router.put("/", response_model=ApiResponse[PreferencesResponse])
async def update_preferences(
    data: PreferencesUpdate,
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Update time slots

    Changing **work_schedule** without **time_slots** resets the slots to
    that schedule's defaults.
    """
    preferences_service = services.get_preferences_service()

    preferences = await preferences_service.update_preferences(
        patient_id or user.id,
        user.id,
        work_schedule=data.work_schedule,
        time_slots=(
            {slot: spec.model_dump() for slot, spec in data.time_slots.items()}
            if data.time_slots is not None else None
        ),
        db=db
    )
    return ok(PreferencesResponse(**preferences), "Preferences updated")


@router.get("/grace-periods", response_model=ApiResponse[GracePeriodResponse])
async def get_grace_periods(
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    grace_period_service = services.get_grace_period_service()
    config = await grace_period_service.get_config(patient_id or user.id, user.id, db=db)
    return ok(GracePeriodResponse(**config))


@router.put("/grace-periods", response_model=ApiResponse[GracePeriodResponse])
async def update_grace_periods(
    data: GracePeriodUpdate,
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Set grace periods (0-1440 minutes) by default, slot, medication or medication type,
    and the weekend and holiday multipliers (1-5)
    """
    grace_period_service = services.get_grace_period_service()

    config = await grace_period_service.upsert_config(
        patient_id or user.id,
        user.id,
        default_grace_minutes=data.default_grace_minutes,
        slot_grace_minutes=data.slot_grace_minutes,
        medication_overrides=data.medication_overrides,
        medication_type_rules=data.medication_type_rules,
        weekend_multiplier=data.weekend_multiplier,
        holiday_multiplier=data.holiday_multiplier,
        db=db
    )
    return ok(GracePeriodResponse(**config), "Grace periods updated")
