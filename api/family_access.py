"""
Family Access API Router
Endpoints for listing, revoking and repairing family relationships
"""

from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import models
from api.deps import get_db, get_current_user, services
from api.schemas.common import ApiResponse, ok
from api.schemas.family import (
    AccessRevoke,
    FamilyAccessOverview,
    RelationshipResponse,
    RepairReport,
    TimezoneUpdate,
    UserProfileResponse,
)


router = APIRouter(prefix="/family-access", tags=["family-access"])


@router.get("/", response_model=ApiResponse[FamilyAccessOverview])
async def list_family_access(
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Patients the caller can see, and family members who can see the caller
    """
    access_service = services.get_access_service()
    overview = await access_service.list_family_access(user.id, db=db)
    return ok(FamilyAccessOverview(**overview))


@router.get("/profile", response_model=ApiResponse[UserProfileResponse])
async def get_my_profile(
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    The caller's profile, with missing patient links re-derived
    """
    access_service = services.get_access_service()
    profile = await access_service.get_profile(user.id, db=db)
    return ok(UserProfileResponse.model_validate(profile))


@router.put("/profile/timezone", response_model=ApiResponse[UserProfileResponse])
async def update_my_timezone(
    data: TimezoneUpdate,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Set the timezone in which the caller's times of day are interpreted
    """
    user_service = services.get_user_service()
    profile = await user_service.update_timezone(user.id, data.timezone, db=db)
    return ok(UserProfileResponse.model_validate(profile), "Timezone updated")


@router.post("/repair", response_model=ApiResponse[RepairReport])
async def repair_family_links(
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    access_service = services.get_access_service()
    report = await access_service.repair_family_links(user.id, db=db)
    message = "Family links repaired" if report["repaired"] else "No repair needed"
    return ok(RepairReport(**report), message)


@router.post("/{relationship_id}/revoke", response_model=ApiResponse[RelationshipResponse])
async def revoke_access(
    relationship_id: str,
    data: Optional[AccessRevoke] = None,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Revoke a family member's access (patient only)
    """
    access_service = services.get_access_service()

    relationship = await access_service.revoke_access(
        relationship_id,
        user.id,
        reason=data.reason if data else None,
        db=db
    )
    return ok(RelationshipResponse.model_validate(relationship), "Access revoked")
