"""
Dose Events API Router
Endpoints for acting on individual doses
"""

from typing import Optional
from datetime import datetime, timedelta
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

import models
from api.deps import get_db, get_current_user, services
from api.schemas.common import ApiResponse, ok
from api.schemas.dose_event import (
    DoseTaken,
    DoseSnooze,
    DoseSkip,
    DoseReschedule,
    DoseMissed,
    DoseCorrection,
    DoseEventResponse,
    DoseEventList,
    BucketedDose,
    TodayBuckets,
)


router = APIRouter(prefix="/dose-events", tags=["dose-events"])


@router.get("/", response_model=ApiResponse[DoseEventList])
async def list_dose_events(
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    start: Optional[datetime] = Query(None, description="Defaults to 24 hours ago"),
    end: Optional[datetime] = Query(None, description="Defaults to 24 hours from now"),
    status: Optional[str] = Query(None),
    medication_id: Optional[int] = Query(None),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Get a patient's dose events in a time range, oldest first
    """
    dose_event_service = services.get_dose_event_service()
    now = datetime.utcnow()

    events = await dose_event_service.list_events(
        patient_id or user.id,
        user.id,
        start=start or now - timedelta(days=1),
        end=end or now + timedelta(days=1),
        status=status,
        medication_id=medication_id,
        db=db
    )
    return ok(DoseEventList(
        events=[DoseEventResponse.model_validate(e) for e in events],
        total=len(events)
    ))


@router.get("/today", response_model=ApiResponse[TodayBuckets])
async def get_today(
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Today's doses grouped into overdue / now / due_soon / slot / completed buckets
    """
    time_bucket_service = services.get_time_bucket_service()

    result = await time_bucket_service.get_today_buckets(patient_id or user.id, user.id, db=db)
    return ok(TodayBuckets(
        patient_id=result["patient_id"],
        date=result["date"],
        timezone=result["timezone"],
        buckets={
            name: [
                BucketedDose(
                    event=DoseEventResponse.model_validate(item.event),
                    medication_name=item.medication_name,
                    minutes_until_due=item.minutes_until_due,
                    local_time=item.local_time
                ) for item in items
            ]
            for name, items in result["buckets"].items()
        },
        summary=result["summary"]
    ))


@router.get("/{event_id}", response_model=ApiResponse[DoseEventResponse])
async def get_dose_event(
    event_id: int,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    dose_event_service = services.get_dose_event_service()
    event = await dose_event_service.get_event(event_id, user.id, db=db)
    return ok(DoseEventResponse.model_validate(event))


@router.post("/{event_id}/take", response_model=ApiResponse[DoseEventResponse])
async def take_dose(
    event_id: int,
    data: Optional[DoseTaken] = None,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Mark a dose as taken

    - **taken_at**: When it was taken; omitted, unreadable or future values mean now
    """
    dose_event_service = services.get_dose_event_service()
    data = data or DoseTaken()

    event = await dose_event_service.mark_taken(
        event_id,
        user.id,
        taken_at=data.taken_at,
        notes=data.notes,
        db=db
    )
    return ok(DoseEventResponse.model_validate(event), "Dose marked as taken")


@router.post("/{event_id}/snooze", response_model=ApiResponse[DoseEventResponse])
async def snooze_dose(
    event_id: int,
    data: DoseSnooze,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    dose_event_service = services.get_dose_event_service()

    event = await dose_event_service.snooze(event_id, user.id, data.minutes, reason=data.reason, db=db)
    return ok(DoseEventResponse.model_validate(event), f"Dose snoozed for {data.minutes} minutes")


@router.post("/{event_id}/skip", response_model=ApiResponse[DoseEventResponse])
async def skip_dose(
    event_id: int,
    data: DoseSkip,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    dose_event_service = services.get_dose_event_service()

    event = await dose_event_service.skip(event_id, user.id, data.reason, notes=data.notes, db=db)
    return ok(DoseEventResponse.model_validate(event), "Dose skipped")


@router.post("/{event_id}/reschedule", response_model=ApiResponse[DoseEventResponse])
async def reschedule_dose(
    event_id: int,
    data: DoseReschedule,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    dose_event_service = services.get_dose_event_service()

    event = await dose_event_service.reschedule(
        event_id,
        user.id,
        data.new_date_time,
        data.reason,
        is_one_time=data.is_one_time,
        db=db
    )
    return ok(DoseEventResponse.model_validate(event), "Dose rescheduled")


@router.post("/{event_id}/miss", response_model=ApiResponse[DoseEventResponse])
async def mark_dose_missed(
    event_id: int,
    data: DoseMissed,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    dose_event_service = services.get_dose_event_service()

    event = await dose_event_service.mark_missed(event_id, user.id, data.reason, db=db)
    return ok(DoseEventResponse.model_validate(event), "Dose marked as missed")


@router.post("/{event_id}/correct", response_model=ApiResponse[DoseEventResponse])
async def correct_dose_status(
    event_id: int,
    data: DoseCorrection,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    dose_event_service = services.get_dose_event_service()

    event = await dose_event_service.correct_status(event_id, user.id, data.new_status, data.reason, db=db)
    return ok(DoseEventResponse.model_validate(event), "Dose status corrected")
