"""
Medications API Router
Endpoints for medication management
"""

from typing import Optional
from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session

import models
from api.deps import get_db, get_current_user, services
from api.schemas.common import ApiResponse, ok
from api.schemas.medication import (
    MedicationCreate,
    MedicationUpdate,
    MedicationResponse,
    MedicationList,
    MedicationDeactivated,
)


router = APIRouter(prefix="/medications", tags=["medications"])


@router.post("/", response_model=ApiResponse[MedicationResponse], status_code=status.HTTP_201_CREATED)
async def create_medication(
    medication_data: MedicationCreate,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Add a new medication for a patient

    - **patient_id**: Patient ID (defaults to the caller)
    - **name**: Medication name
    - **dosage**: Dosage (e.g., "500mg")
    """
    medication_service = services.get_medication_service()

    medication = await medication_service.add_medication(
        patient_id=medication_data.patient_id or user.id,
        actor_id=user.id,
        name=medication_data.name,
        dosage=medication_data.dosage,
        generic_name=medication_data.generic_name,
        instructions=medication_data.instructions,
        purpose=medication_data.purpose,
        is_prn=medication_data.is_prn,
        db=db
    )
    return ok(MedicationResponse.model_validate(medication), "Medication added")


@router.get("/", response_model=ApiResponse[MedicationList])
async def get_patient_medications(
    patient_id: Optional[str] = Query(None, description="Defaults to the caller"),
    active_only: bool = Query(True, description="Only return active medications"),
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Get all medications for a patient
    """
    medication_service = services.get_medication_service()

    medications = await medication_service.get_patient_medications(
        patient_id or user.id,
        user.id,
        active_only=active_only,
        db=db
    )

    return ok(MedicationList(
        medications=[MedicationResponse.model_validate(m) for m in medications],
        total=len(medications),
        active_count=sum(1 for m in medications if m.is_active)
    ))


@router.get("/{medication_id}", response_model=ApiResponse[MedicationResponse])
async def get_medication(
    medication_id: int,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    medication_service = services.get_medication_service()
    medication = await medication_service.get_medication(medication_id, user.id, db=db)
    return ok(MedicationResponse.model_validate(medication))


@router.put("/{medication_id}", response_model=ApiResponse[MedicationResponse])
async def update_medication(
    medication_id: int,
    update_data: MedicationUpdate,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Update medication information
    """
    medication_service = services.get_medication_service()

    medication = await medication_service.update_medication(
        medication_id,
        user.id,
        update_data.model_dump(exclude_unset=True),
        db=db
    )
    return ok(MedicationResponse.model_validate(medication), "Medication updated")


@router.delete("/{medication_id}", response_model=ApiResponse[MedicationDeactivated])
async def deactivate_medication(
    medication_id: int,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Deactivate a medication (soft delete)

    Future scheduled doses are cancelled; history is kept.
    """
    medication_service = services.get_medication_service()

    result = await medication_service.deactivate_medication(medication_id, user.id, db=db)
    return ok(MedicationDeactivated(
        medication=MedicationResponse.model_validate(result["medication"]),
        schedules_deactivated=result["schedules_deactivated"],
        events_cancelled=result["events_cancelled"]
    ), "Medication deactivated")
