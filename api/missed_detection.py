"""
Missed Detection API Router
On-demand missed dose detection
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

import models
from api.deps import get_db, get_current_user, services
from api.schemas.common import ApiResponse, ok
from api.schemas.adherence import DetectionRun


router = APIRouter(prefix="/missed-detection", tags=["missed-detection"])


@router.post("/run", response_model=ApiResponse[DetectionRun])
async def run_missed_detection(
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Run missed dose detection now for one patient
    """
    detector = services.get_missed_dose_detector()

    result = await detector.run_for_patient(patient_id or user.id, actor_id=user.id, db=db)
    return ok(DetectionRun(**result.to_dict()), f"{result.missed} doses marked as missed")
