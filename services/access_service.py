"""
Access Service
Patient <-> family member relationship graph and capability checks

Every capability-gated operation in the system resolves
``(actor_id, patient_id) -> active relationship -> permission set`` through
this module at call time.
"""

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from config import engine_config
from database import get_db_context, run_in_transaction, TransactionAborted
from exceptions import (
    AuthorizationError,
    ConflictError,
    ExpiredError,
    InternalError,
    NotFoundError,
    ValidationError,
)
import models
from models import AccessLevel, Capability, RelationshipStatus, UserType
from tools.notification_service import (
    InvitationNotifier,
    NotificationResult,
    invitation_notifier,
    render_invitation,
)


logger = logging.getLogger(__name__)


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

OWNER_PERMISSIONS: Dict[str, bool] = {cap.value: True for cap in Capability}

ACCESS_LEVEL_PERMISSIONS: Dict[AccessLevel, Dict[str, bool]] = {
    AccessLevel.FULL: dict(OWNER_PERMISSIONS),
    AccessLevel.VIEW_ONLY: {
        Capability.CAN_VIEW.value: True,
        Capability.CAN_CREATE.value: False,
        Capability.CAN_EDIT.value: False,
        Capability.CAN_DELETE.value: False,
        Capability.CAN_CLAIM_RESPONSIBILITY.value: True,
        Capability.CAN_MANAGE_FAMILY.value: False,
        Capability.CAN_VIEW_MEDICAL_DETAILS.value: False,
        Capability.CAN_RECEIVE_NOTIFICATIONS.value: True,
    },
}
ACCESS_LEVEL_PERMISSIONS[AccessLevel.LIMITED] = dict(ACCESS_LEVEL_PERMISSIONS[AccessLevel.VIEW_ONLY])


# ==================== HELPERS ====================

def normalize_email(email: Optional[str]) -> str:
    """Lowercase and trim an email address, validating its format"""
    normalized = (email or "").strip().lower()
    if not normalized or not EMAIL_PATTERN.match(normalized):
        raise ValidationError(f"Invalid email address: {email!r}")
    return normalized


def relationship_id_for(patient_id: str, normalized_email: str) -> str:
    """Deterministic relationship id so re-inviting the same email updates in place"""
    email_hash = hashlib.sha256(normalized_email.encode("utf-8")).hexdigest()[:24]
    return f"{patient_id}_{email_hash}"


def generate_invitation_token() -> str:
    """Unguessable single-use invitation token"""
    return f"inv_{secrets.token_urlsafe(24)}"


def derive_permissions(
    access_level: AccessLevel,
    overrides: Optional[Dict[str, bool]] = None
) -> Dict[str, bool]:
    """Permission set for an access level, with explicit per-capability overrides"""
    permissions = dict(ACCESS_LEVEL_PERMISSIONS[AccessLevel(access_level)])
    for key, value in (overrides or {}).items():
        try:
            capability = Capability(key)
        except ValueError:
            raise ValidationError(f"Unknown capability: {key}")
        permissions[capability.value] = bool(value)
    return permissions


def _add_unique(values: Optional[List[str]], item: str) -> List[str]:
    values = list(values or [])
    if item not in values:
        values.append(item)
    return values


def _remove(values: Optional[List[str]], item: str) -> List[str]:
    return [v for v in (values or []) if v != item]


def _find_active(
    session: Session,
    patient_id: str,
    family_member_id: str,
    exclude_id: Optional[str] = None
) -> Optional[models.Relationship]:
    query = session.query(models.Relationship).filter(
        and_(
            models.Relationship.patient_id == patient_id,
            models.Relationship.family_member_id == family_member_id,
            models.Relationship.status == RelationshipStatus.ACTIVE
        )
    )
    if exclude_id:
        query = query.filter(models.Relationship.id != exclude_id)
    return query.first()


def resolve_permissions(session: Session, actor_id: str, patient_id: str) -> Dict[str, bool]:
    """
    Resolve the capability set an actor holds over a patient's data.

    The patient always holds every capability; anyone else needs an active
    relationship.

    Raises:
        AuthorizationError: when the actor has no active relationship
    """
    if actor_id == patient_id:
        return dict(OWNER_PERMISSIONS)

    relationship = _find_active(session, patient_id, actor_id)
    if not relationship:
        raise AuthorizationError("Access denied - no active relationship with this patient")

    return {cap.value: bool((relationship.permissions or {}).get(cap.value)) for cap in Capability}


def check_capability(
    session: Session,
    actor_id: str,
    patient_id: str,
    *capabilities: Capability
) -> Dict[str, bool]:
    """Require every listed capability, returning the resolved permission set"""
    permissions = resolve_permissions(session, actor_id, patient_id)
    missing = [cap.value for cap in capabilities if not permissions.get(cap.value)]
    if missing:
        raise AuthorizationError(
            f"Access denied - missing permission: {', '.join(missing)}",
            details={"missing": missing}
        )
    return permissions


# ==================== RESULTS ====================

@dataclass
class InvitationResult:
    """Outcome of creating or resending an invitation"""
    relationship: models.Relationship
    email: NotificationResult


# ==================== SERVICE ====================

class AccessService:
    """
    Service for family invitations, relationships and authorization
    """

    def __init__(self, notifier: Optional[InvitationNotifier] = None):
        self.notifier = notifier or invitation_notifier

    # ---------- authorization ----------

    async def resolve_permissions(
        self,
        actor_id: str,
        patient_id: str,
        db: Optional[Session] = None
    ) -> Dict[str, bool]:
        if db:
            return resolve_permissions(db, actor_id, patient_id)

        with get_db_context() as session:
            return resolve_permissions(session, actor_id, patient_id)

    async def require_capability(
        self,
        actor_id: str,
        patient_id: str,
        *capabilities: Capability,
        db: Optional[Session] = None
    ) -> Dict[str, bool]:
        if db:
            return check_capability(db, actor_id, patient_id, *capabilities)

        with get_db_context() as session:
            return check_capability(session, actor_id, patient_id, *capabilities)

    # ---------- invitations ----------

    async def invite_family_member(
        self,
        patient_id: str,
        email: str,
        invitee_name: Optional[str] = None,
        access_level: AccessLevel = AccessLevel.LIMITED,
        permissions: Optional[Dict[str, bool]] = None,
        message: Optional[str] = None,
        relationship_label: Optional[str] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> InvitationResult:
        """
        Invite a family member by email

        Args:
            patient_id: Inviting patient (must be tagged as a patient)
            email: Invitee address, normalized before use
            invitee_name: Display name for the invitee
            access_level: Permission preset
            permissions: Per-capability overrides on top of the preset
            message: Personal message included in the email
            relationship_label: e.g. "spouse", "child"
            now: Clock override
            db: Database session

        Returns:
            InvitationResult with the pending relationship and the email outcome
        """
        now = now or datetime.utcnow()
        normalized_email = normalize_email(email)
        final_permissions = derive_permissions(access_level, permissions)

        def _invite(session: Session) -> models.Relationship:
            sender = session.get(models.UserProfile, patient_id)
            if not sender:
                raise NotFoundError("User profile not found")

            if sender.user_type != UserType.PATIENT:
                raise AuthorizationError("Only patients can invite family members")

            if normalized_email == (sender.email or "").strip().lower():
                raise ValidationError("You cannot invite yourself to your own care circle")

            relationship_id = relationship_id_for(patient_id, normalized_email)
            relationship = session.get(models.Relationship, relationship_id)

            if relationship:
                if relationship.status == RelationshipStatus.ACTIVE:
                    raise ConflictError(
                        "This family member already has active access to your care circle"
                    )
                if relationship.status == RelationshipStatus.PENDING and (
                    relationship.invitation_expires_at and now < relationship.invitation_expires_at
                ):
                    raise ConflictError(
                        "An invitation is already pending for this email address"
                    )
                logger.info(
                    f"Replacing {relationship.status.value} relationship {relationship_id} "
                    f"with a fresh invitation"
                )
            else:
                relationship = models.Relationship(id=relationship_id, patient_id=patient_id)
                session.add(relationship)

            relationship.family_member_id = None
            relationship.family_member_email = normalized_email
            relationship.family_member_name = invitee_name
            relationship.relationship_label = relationship_label or "family_member"
            relationship.access_level = AccessLevel(access_level)
            relationship.permissions = final_permissions
            relationship.status = RelationshipStatus.PENDING
            relationship.invitation_token = generate_invitation_token()
            relationship.accepted_token = None
            relationship.invitation_expires_at = now + timedelta(days=engine_config.INVITATION_EXPIRY_DAYS)
            relationship.invitation_message = message
            relationship.invited_at = now
            relationship.accepted_at = None
            relationship.revoked_at = None
            relationship.revoked_by = None
            relationship.revocation_reason = None
            relationship.updated_at = now

            session.commit()
            session.refresh(relationship)

            logger.info(f"Patient {patient_id} invited {normalized_email} ({relationship.id})")
            return relationship

        if db:
            relationship = _invite(db)
            patient_name = await self._patient_display_name(db, patient_id)
        else:
            with get_db_context() as session:
                relationship = _invite(session)
                patient_name = await self._patient_display_name(session, patient_id)

        email_result = await self._deliver(relationship, patient_name)
        return InvitationResult(relationship=relationship, email=email_result)

    async def resend_invitation(
        self,
        relationship_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> InvitationResult:
        """Issue a new token and expiry for a pending invitation"""
        now = now or datetime.utcnow()

        def _resend(session: Session) -> models.Relationship:
            relationship = session.get(models.Relationship, relationship_id)
            if not relationship:
                raise NotFoundError("Invitation not found")
            if relationship.patient_id != actor_id:
                raise AuthorizationError("Access denied - you can only resend your own invitations")
            if relationship.status != RelationshipStatus.PENDING:
                raise ValidationError("Can only resend pending invitations")

            relationship.invitation_token = generate_invitation_token()
            relationship.invitation_expires_at = now + timedelta(days=engine_config.INVITATION_EXPIRY_DAYS)
            relationship.updated_at = now
            session.commit()
            session.refresh(relationship)
            return relationship

        if db:
            relationship = _resend(db)
            patient_name = await self._patient_display_name(db, actor_id)
        else:
            with get_db_context() as session:
                relationship = _resend(session)
                patient_name = await self._patient_display_name(session, actor_id)

        email_result = await self._deliver(relationship, patient_name)
        return InvitationResult(relationship=relationship, email=email_result)

    async def get_invitation(
        self,
        token: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """Public preview of a pending invitation"""
        now = now or datetime.utcnow()

        def _get(session: Session) -> Dict[str, Any]:
            invitation = session.query(models.Relationship).filter(
                and_(
                    models.Relationship.invitation_token == token,
                    models.Relationship.status == RelationshipStatus.PENDING
                )
            ).first()
            if not invitation:
                raise NotFoundError("Invitation not found or expired")
            if invitation.invitation_expires_at and now > invitation.invitation_expires_at:
                raise ExpiredError("Invitation has expired")

            patient = session.get(models.UserProfile, invitation.patient_id)
            return {
                "id": invitation.id,
                "patient_id": invitation.patient_id,
                "patient_name": patient.name if patient and patient.name else "Unknown",
                "patient_email": patient.email if patient else "Unknown",
                "family_member_email": invitation.family_member_email,
                "access_level": invitation.access_level.value,
                "permissions": dict(invitation.permissions or {}),
                "message": invitation.invitation_message or "",
                "status": invitation.status.value,
                "invited_at": invitation.invited_at,
                "expires_at": invitation.invitation_expires_at,
            }

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    # ---------- acceptance ----------

    def _load_pending_invitation(
        self,
        session: Session,
        token: str,
        acceptor_id: str,
        now: datetime
    ) -> models.Relationship:
        """Acceptance steps 1-2: token lookup and duplicate pre-check"""
        invitation = session.query(models.Relationship).filter(
            models.Relationship.invitation_token == token
        ).first()

        if not invitation:
            consumed = session.query(models.Relationship).filter(
                models.Relationship.accepted_token == token
            ).first()
            if consumed and consumed.status == RelationshipStatus.ACTIVE:
                raise ConflictError("This invitation has already been accepted")
            raise NotFoundError("Invitation not found or expired")

        if invitation.status != RelationshipStatus.PENDING:
            raise NotFoundError("Invitation not found or expired")

        if invitation.invitation_expires_at and now > invitation.invitation_expires_at:
            raise ExpiredError("Invitation has expired")

        if invitation.patient_id == acceptor_id:
            raise ValidationError("You cannot accept your own invitation")

        if _find_active(session, invitation.patient_id, acceptor_id):
            raise ConflictError("You already have active access to this patient")

        return invitation

    def _apply_acceptance(
        self,
        session: Session,
        relationship_id: str,
        token: str,
        acceptor_id: str,
        now: datetime
    ) -> models.Relationship:
        """
        Acceptance step 3, executed inside one transaction.

        Preconditions are re-validated here because this function is re-run
        from scratch on every retry.
        """
        current = session.query(models.Relationship).filter(
            models.Relationship.id == relationship_id
        ).populate_existing().first()

        if not current or current.status != RelationshipStatus.PENDING or current.invitation_token != token:
            raise ConflictError("This invitation has already been accepted")

        if _find_active(session, current.patient_id, acceptor_id, exclude_id=relationship_id):
            raise ConflictError("You already have active access to this patient")

        patient_id = current.patient_id

        # Compare-and-set: only one acceptance can flip pending -> active
        flipped = session.query(models.Relationship).filter(
            and_(
                models.Relationship.id == relationship_id,
                models.Relationship.status == RelationshipStatus.PENDING,
                models.Relationship.invitation_token == token
            )
        ).update(
            {
                models.Relationship.status: RelationshipStatus.ACTIVE,
                models.Relationship.family_member_id: acceptor_id,
                models.Relationship.invitation_token: None,
                models.Relationship.accepted_token: token,
                models.Relationship.accepted_at: now,
                models.Relationship.updated_at: now,
            },
            synchronize_session=False
        )
        if flipped != 1:
            raise ConflictError("This invitation has already been accepted")

        acceptor = session.get(models.UserProfile, acceptor_id, populate_existing=True)
        if not acceptor:
            raise NotFoundError("User profile not found")

        acceptor.user_type = UserType.FAMILY_MEMBER
        acceptor.linked_patient_ids = _add_unique(acceptor.linked_patient_ids, patient_id)
        acceptor.primary_patient_id = patient_id
        acceptor.updated_at = now

        patient = session.get(models.UserProfile, patient_id, populate_existing=True)
        if patient:
            patient.family_member_ids = _add_unique(patient.family_member_ids, acceptor_id)
            patient.updated_at = now
        else:
            logger.warning(f"Patient profile {patient_id} missing while accepting {relationship_id}")

        session.flush()
        return session.query(models.Relationship).filter(
            models.Relationship.id == relationship_id
        ).populate_existing().one()

    async def accept_invitation(
        self,
        token: str,
        acceptor_id: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.Relationship:
        """
        Accept an invitation, activating the relationship

        Safe under concurrent acceptance of the same token: exactly one caller
        succeeds and every other caller gets a ConflictError.
        """
        now = now or datetime.utcnow()

        def _accept(session: Session) -> models.Relationship:
            invitation = self._load_pending_invitation(session, token, acceptor_id, now)
            relationship_id = invitation.id

            try:
                relationship = run_in_transaction(
                    session,
                    lambda s: self._apply_acceptance(s, relationship_id, token, acceptor_id, now)
                )
            except TransactionAborted as e:
                logger.error(f"Acceptance of {relationship_id} aborted: {e}")
                raise InternalError("Could not accept invitation, please try again")

            logger.info(
                f"Invitation {relationship_id} accepted by {acceptor_id} "
                f"for patient {relationship.patient_id}"
            )
            return relationship

        if db:
            return _accept(db)

        with get_db_context() as session:
            return _accept(session)

    # ---------- revocation ----------

    async def revoke_access(
        self,
        relationship_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.Relationship:
        """Revoke a relationship or cancel a pending invitation (patient only)"""
        now = now or datetime.utcnow()

        def _revoke(session: Session) -> models.Relationship:
            relationship = session.get(models.Relationship, relationship_id)
            if not relationship:
                raise NotFoundError("Family access record not found")
            if relationship.patient_id != actor_id:
                raise AuthorizationError(
                    "Access denied - you can only remove family members from your own care circle"
                )
            if relationship.status == RelationshipStatus.REVOKED:
                raise ConflictError("Access has already been revoked")

            member_id = relationship.family_member_id
            relationship.status = RelationshipStatus.REVOKED
            relationship.invitation_token = None
            relationship.revoked_at = now
            relationship.revoked_by = actor_id
            relationship.revocation_reason = reason or "Removed by patient"
            relationship.updated_at = now

            if member_id:
                member = session.get(models.UserProfile, member_id)
                if member:
                    member.linked_patient_ids = _remove(member.linked_patient_ids, actor_id)
                    if member.primary_patient_id == actor_id:
                        member.primary_patient_id = (member.linked_patient_ids or [None])[0]
                patient = session.get(models.UserProfile, actor_id)
                if patient:
                    patient.family_member_ids = _remove(patient.family_member_ids, member_id)

            session.commit()
            session.refresh(relationship)

            logger.info(f"Relationship {relationship_id} revoked by {actor_id}")
            return relationship

        if db:
            return _revoke(db)

        with get_db_context() as session:
            return _revoke(session)

    # ---------- listing ----------

    async def list_family_access(
        self,
        actor_id: str,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """Relationships where the actor is either side, deduplicated"""
        def _list(session: Session) -> Dict[str, Any]:
            as_member = session.query(models.Relationship).filter(
                and_(
                    models.Relationship.family_member_id == actor_id,
                    models.Relationship.status == RelationshipStatus.ACTIVE
                )
            ).order_by(models.Relationship.accepted_at).all()

            as_patient = session.query(models.Relationship).filter(
                and_(
                    models.Relationship.patient_id == actor_id,
                    models.Relationship.status.in_([RelationshipStatus.ACTIVE, RelationshipStatus.PENDING])
                )
            ).order_by(models.Relationship.invited_at).all()

            patients: Dict[str, Dict[str, Any]] = {}
            for access in as_member:
                if access.patient_id == actor_id or access.patient_id in patients:
                    continue
                patient = session.get(models.UserProfile, access.patient_id)
                if not patient:
                    logger.warning(f"Patient data not found for patientId: {access.patient_id}")
                    continue
                patients[access.patient_id] = {
                    "id": access.id,
                    "patient_id": access.patient_id,
                    "patient_name": patient.name,
                    "patient_email": patient.email,
                    "access_level": access.access_level.value,
                    "permissions": dict(access.permissions or {}),
                    "status": access.status.value,
                    "accepted_at": access.accepted_at,
                }

            members: Dict[str, Dict[str, Any]] = {}
            pending: List[Dict[str, Any]] = []
            for access in as_patient:
                if access.status == RelationshipStatus.PENDING:
                    pending.append({
                        "id": access.id,
                        "family_member_email": access.family_member_email,
                        "family_member_name": access.family_member_name,
                        "access_level": access.access_level.value,
                        "invited_at": access.invited_at,
                        "expires_at": access.invitation_expires_at,
                    })
                    continue
                if not access.family_member_id or access.family_member_id == actor_id:
                    continue
                if access.family_member_id in members:
                    continue
                member = session.get(models.UserProfile, access.family_member_id)
                members[access.family_member_id] = {
                    "id": access.id,
                    "family_member_id": access.family_member_id,
                    "family_member_name": (member.name if member else None) or access.family_member_name,
                    "family_member_email": member.email if member else access.family_member_email,
                    "access_level": access.access_level.value,
                    "permissions": dict(access.permissions or {}),
                    "status": access.status.value,
                    "accepted_at": access.accepted_at,
                }

            return {
                "patients_i_have_access_to": list(patients.values()),
                "family_members_with_access_to_me": list(members.values()),
                "pending_invitations": pending,
                "total_connections": len(patients) + len(members),
            }

        if db:
            return _list(db)

        with get_db_context() as session:
            return _list(session)

    # ---------- reciprocal link repair ----------

    def _reconcile_links(
        self,
        session: Session,
        profile: models.UserProfile,
        reason: str,
        now: datetime
    ) -> Dict[str, Any]:
        """Re-derive a family member's patient links from active relationships"""
        report: Dict[str, Any] = {
            "user_id": profile.id,
            "repaired": False,
            "relationships_repaired": 0,
            "patients_updated": 0,
            "linked_patient_ids": list(profile.linked_patient_ids or []),
        }

        active = session.query(models.Relationship).filter(
            and_(
                models.Relationship.family_member_id == profile.id,
                models.Relationship.status == RelationshipStatus.ACTIVE
            )
        ).order_by(models.Relationship.accepted_at).all()

        if not active and profile.email:
            orphaned = session.query(models.Relationship).filter(
                and_(
                    models.Relationship.family_member_email == profile.email.lower(),
                    models.Relationship.status == RelationshipStatus.ACTIVE,
                    or_(
                        models.Relationship.family_member_id.is_(None),
                        models.Relationship.family_member_id == ""
                    )
                )
            ).all()
            for access in orphaned:
                if access.patient_id == profile.id:
                    continue
                access.family_member_id = profile.id
                access.repaired_at = now
                access.repair_reason = "missing_family_member_id"
                report["relationships_repaired"] += 1
                active.append(access)

        patient_ids: List[str] = []
        for access in active:
            if access.patient_id not in patient_ids:
                patient_ids.append(access.patient_id)

        if not patient_ids:
            return report

        linked = list(profile.linked_patient_ids or [])
        missing = [p for p in patient_ids if p not in linked]
        primary_ok = profile.primary_patient_id in patient_ids

        if not missing and primary_ok and not report["relationships_repaired"]:
            return report

        profile.linked_patient_ids = linked + missing
        if not primary_ok:
            profile.primary_patient_id = patient_ids[0]
        profile.user_type = UserType.FAMILY_MEMBER
        profile.repaired_at = now
        profile.repair_reason = reason

        for patient_id in patient_ids:
            patient = session.get(models.UserProfile, patient_id)
            if patient and profile.id not in (patient.family_member_ids or []):
                patient.family_member_ids = _add_unique(patient.family_member_ids, profile.id)
                report["patients_updated"] += 1

        session.commit()
        session.refresh(profile)

        logger.warning(f"Repaired family links for {profile.id}: {reason}")
        report["repaired"] = True
        report["linked_patient_ids"] = list(profile.linked_patient_ids or [])
        return report

    async def get_profile(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.UserProfile:
        """
        Read a profile, re-deriving missing patient links for family members.

        The acceptance transaction writes the links; this path only covers
        profiles written before that was the case.
        """
        now = now or datetime.utcnow()

        def _get(session: Session) -> models.UserProfile:
            profile = session.get(models.UserProfile, user_id)
            if not profile:
                raise NotFoundError(f"User profile {user_id} not found")
            if profile.user_type == UserType.FAMILY_MEMBER or not profile.family_member_ids:
                self._reconcile_links(session, profile, "auto_repair_missing_patient_links", now)
            return profile

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def repair_family_links(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """Explicit reconciliation of the caller's reciprocal links"""
        now = now or datetime.utcnow()

        def _repair(session: Session) -> Dict[str, Any]:
            profile = session.get(models.UserProfile, user_id)
            if not profile:
                raise NotFoundError(f"User profile {user_id} not found")
            return self._reconcile_links(session, profile, "repair_endpoint_missing_patient_links", now)

        if db:
            return _repair(db)

        with get_db_context() as session:
            return _repair(session)

    # ---------- internals ----------

    async def _patient_display_name(self, session: Session, patient_id: str) -> str:
        patient = session.get(models.UserProfile, patient_id)
        if not patient:
            return "A CareCircle user"
        return patient.name or patient.email

    async def _deliver(
        self,
        relationship: models.Relationship,
        patient_name: str
    ) -> NotificationResult:
        """Send the invitation email; failures are reported, never raised"""
        message = render_invitation(
            to_email=relationship.family_member_email,
            patient_name=patient_name,
            token=relationship.invitation_token,
            expires_at=relationship.invitation_expires_at,
            invitee_name=relationship.family_member_name,
            personal_message=relationship.invitation_message,
        )
        try:
            return await self.notifier.send_invitation(message)
        except Exception as e:
            logger.exception(f"Invitation delivery to {relationship.family_member_email} crashed")
            return NotificationResult(
                success=False,
                recipient=relationship.family_member_email,
                error=str(e)
            )


# Singleton instance
access_service = AccessService()
