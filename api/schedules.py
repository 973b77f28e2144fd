"""
Schedules API Router
Endpoints for medication schedules and their expansion
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session

import models
from api.deps import get_db, get_current_user, services
from api.schemas.common import ApiResponse, ok
from api.schemas.medication import (
    ScheduleCreate,
    ScheduleUpdate,
    SchedulePause,
    ScheduleResponse,
    ScheduleWithExpansion,
    ExpansionResult,
)


router = APIRouter(prefix="/schedules", tags=["schedules"])


def _with_expansion(result: dict) -> ScheduleWithExpansion:
    return ScheduleWithExpansion(
        schedule=ScheduleResponse.model_validate(result["schedule"]),
        events_created=result["events_created"],
        events_cancelled=result.get("events_cancelled", 0)
    )


@router.post("/", response_model=ApiResponse[ScheduleWithExpansion], status_code=status.HTTP_201_CREATED)
async def create_schedule(
    schedule_data: ScheduleCreate,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Create a schedule and generate its upcoming dose events

    - **frequency**: once_daily, twice_daily, three_times_daily, four_times_daily, weekly, monthly, as_needed
    - **times_of_day**: "HH:MM" local times; daily tiers need exactly 1/2/3/4
    """
    schedule_service = services.get_schedule_service()

    result = await schedule_service.create_schedule(
        medication_id=schedule_data.medication_id,
        actor_id=user.id,
        frequency=schedule_data.frequency,
        times_of_day=schedule_data.times_of_day,
        days_of_week=schedule_data.days_of_week,
        day_of_month=schedule_data.day_of_month,
        start_date=schedule_data.start_date,
        end_date=schedule_data.end_date,
        is_indefinite=schedule_data.is_indefinite,
        db=db
    )
    return ok(_with_expansion(result), "Schedule created")


@router.get("/", response_model=ApiResponse[List[ScheduleResponse]])
async def get_patient_schedules(
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    medication_id: Optional[int] = Query(None),
    active_only: bool = Query(True),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    schedule_service = services.get_schedule_service()

    schedules = await schedule_service.get_patient_schedules(
        patient_id or user.id,
        user.id,
        medication_id=medication_id,
        active_only=active_only,
        db=db
    )
    return ok([ScheduleResponse.model_validate(s) for s in schedules])


@router.post("/expand", response_model=ApiResponse[ExpansionResult])
async def expand_patient_schedules(
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Top up a patient's dose events to the rolling horizon
    """
    schedule_service = services.get_schedule_service()
    target = patient_id or user.id

    created = await schedule_service.expand_patient_schedules(target, actor_id=user.id, db=db)
    return ok(ExpansionResult(patient_id=target, events_created=created))


@router.get("/{schedule_id}", response_model=ApiResponse[ScheduleResponse])
async def get_schedule(
    schedule_id: int,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    schedule_service = services.get_schedule_service()
    schedule = await schedule_service.get_schedule(schedule_id, user.id, db=db)
    return ok(ScheduleResponse.model_validate(schedule))


@router.put("/{schedule_id}", response_model=ApiResponse[ScheduleWithExpansion])
async def update_schedule(
    schedule_id: int,
    update_data: ScheduleUpdate,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    schedule_service = services.get_schedule_service()

    result = await schedule_service.update_schedule(
        schedule_id,
        user.id,
        update_data.model_dump(exclude_unset=True),
        db=db
    )
    return ok(_with_expansion(result), "Schedule updated")


@router.post("/{schedule_id}/pause", response_model=ApiResponse[ScheduleResponse])
async def pause_schedule(
    schedule_id: int,
    pause_data: Optional[SchedulePause] = None,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    schedule_service = services.get_schedule_service()

    schedule = await schedule_service.pause_schedule(
        schedule_id,
        user.id,
        paused_until=pause_data.paused_until if pause_data else None,
        db=db
    )
    return ok(ScheduleResponse.model_validate(schedule), "Schedule paused")


@router.post("/{schedule_id}/resume", response_model=ApiResponse[ScheduleWithExpansion])
async def resume_schedule(
    schedule_id: int,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    schedule_service = services.get_schedule_service()
    result = await schedule_service.resume_schedule(schedule_id, user.id, db=db)
    return ok(_with_expansion(result), "Schedule resumed")
