"""
Adherence API Router
Read-only adherence statistics
"""

from typing import Optional
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

import models
from api.deps import get_db, get_current_user, services
from api.schemas.common import ApiResponse, ok
from api.schemas.adherence import AdherenceSummary


router = APIRouter(prefix="/adherence", tags=["adherence"])


@router.get("/", response_model=ApiResponse[AdherenceSummary])
async def get_adherence(
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    days: int = Query(30, ge=1, le=365, description="Window length when start is omitted"),
    medication_id: Optional[int] = Query(None),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Adherence rates for a patient over a window

    Rates are fractions between 0 and 1. Medications below 0.80 are flagged
    with **is_poor_adherence**.
    """
    adherence_service = services.get_adherence_service()

    summary = await adherence_service.get_adherence_summary(
        patient_id or user.id,
        user.id,
        start=start,
        end=end,
        days=days,
        medication_id=medication_id,
        db=db
    )
    return ok(AdherenceSummary(**summary))
