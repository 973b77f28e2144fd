"""
Invitations API Router
Endpoints for inviting family members and accepting invitations
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

import models
from api.deps import get_db, get_current_user, services
from api.schemas.common import ApiResponse, ok
from api.schemas.family import (
    InvitationCreate,
    InvitationCreated,
    InvitationPreview,
    RelationshipResponse,
    EmailDelivery,
)


router = APIRouter(prefix="/invitations", tags=["invitations"])


def _created(result) -> InvitationCreated:
    return InvitationCreated(
        relationship=RelationshipResponse.model_validate(result.relationship),
        email=EmailDelivery.model_validate(result.email)
    )


@router.post("/", response_model=ApiResponse[InvitationCreated], status_code=status.HTTP_201_CREATED)
async def invite_family_member(
    data: InvitationCreate,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Invite a family member to the caller's care circle

    The invitation is stored even when the email could not be delivered;
    check **email.success** in the response.
    """
    access_service = services.get_access_service()

    result = await access_service.invite_family_member(
        patient_id=user.id,
        email=data.email,
        invitee_name=data.name,
        access_level=data.access_level,
        permissions=data.permissions,
        message=data.message,
        relationship_label=data.relationship_label,
        db=db
    )
    message = "Invitation sent" if result.email.success else "Invitation created but email delivery failed"
    return ok(_created(result), message)


@router.get("/{token}", response_model=ApiResponse[InvitationPreview])
async def get_invitation(
    token: str,
    db: Session = Depends(get_db)
):
    """
    Preview a pending invitation (no authentication required)
    """
    access_service = services.get_access_service()
    invitation = await access_service.get_invitation(token, db=db)
    return ok(InvitationPreview(**invitation))


@router.post("/{token}/accept", response_model=ApiResponse[RelationshipResponse])
async def accept_invitation(
    token: str,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    access_service = services.get_access_service()

    relationship = await access_service.accept_invitation(token, user.id, db=db)
    return ok(RelationshipResponse.model_validate(relationship), "Invitation accepted")


@router.post("/{relationship_id}/resend", response_model=ApiResponse[InvitationCreated])
async def resend_invitation(
    relationship_id: str,
    user: models.UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    access_service = services.get_access_service()

    result = await access_service.resend_invitation(relationship_id, user.id, db=db)
    return ok(_created(result), "Invitation resent")
