"""
Family Access Schemas
Pydantic models for invitations and family relationships
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, EmailStr

from models import AccessLevel, RelationshipStatus, UserType


# ==================== REQUEST SCHEMAS ====================

class InvitationCreate(BaseModel):
    """Schema for inviting a family member"""
    email: EmailStr
    name: Optional[str] = Field(None, max_length=255)
    access_level: AccessLevel = AccessLevel.LIMITED
    permissions: Optional[Dict[str, bool]] = None
    message: Optional[str] = Field(None, max_length=1000)
    relationship_label: Optional[str] = Field(None, max_length=50)


class AccessRevoke(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class TimezoneUpdate(BaseModel):
    timezone: str = Field(..., min_length=1, max_length=50, description="IANA name, e.g. America/New_York")


# ==================== RESPONSE SCHEMAS ====================

class RelationshipResponse(BaseModel):
    """Schema for a relationship record"""
    id: str
    patient_id: str
    family_member_id: Optional[str] = None
    family_member_email: str
    family_member_name: Optional[str] = None
    relationship_label: Optional[str] = None
    access_level: AccessLevel
    permissions: Dict[str, bool] = Field(default_factory=dict)
    status: RelationshipStatus
    invitation_expires_at: Optional[datetime] = None
    invited_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class EmailDelivery(BaseModel):
    success: bool
    recipient: str
    message_id: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class InvitationCreated(BaseModel):
    relationship: RelationshipResponse
    email: EmailDelivery


class InvitationPreview(BaseModel):
    """Public view of a pending invitation"""
    id: str
    patient_id: str
    patient_name: str
    patient_email: str
    family_member_email: str
    access_level: AccessLevel
    permissions: Dict[str, bool]
    message: str = ""
    status: RelationshipStatus
    invited_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class FamilyAccessOverview(BaseModel):
    patients_i_have_access_to: List[Dict[str, Any]]
    family_members_with_access_to_me: List[Dict[str, Any]]
    pending_invitations: List[Dict[str, Any]]
    total_connections: int


class UserProfileResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    user_type: UserType
    timezone: Optional[str] = None
    primary_patient_id: Optional[str] = None
    linked_patient_ids: List[str] = Field(default_factory=list)
    family_member_ids: List[str] = Field(default_factory=list)
    repaired_at: Optional[datetime] = None
    repair_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RepairReport(BaseModel):
    user_id: str
    repaired: bool
    relationships_repaired: int
    patients_updated: int
    linked_patient_ids: List[str]
