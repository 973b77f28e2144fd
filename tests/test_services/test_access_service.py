"""
Tests for Access Service
Tests invitations, acceptance, revocation, permissions and link repair
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from sqlalchemy.orm import sessionmaker

from database import run_in_transaction
from exceptions import (
    AuthorizationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from models import AccessLevel, Capability, Relationship, RelationshipStatus, UserProfile, UserType
from services.access_service import (
    AccessService,
    ACCESS_LEVEL_PERMISSIONS,
    derive_permissions,
    generate_invitation_token,
    normalize_email,
    relationship_id_for,
    resolve_permissions,
)
from tools.notification_service import NotificationResult
from tests.conftest import NOW, link_family


@pytest.fixture
def access_service(mock_notifier):
    """Access service with a recording notifier"""
    return AccessService(notifier=mock_notifier)


async def invite(access_service, db_session, patient, email="fam@example.com", **kwargs):
    result = await access_service.invite_family_member(
        patient.id, email, invitee_name="Fran", now=NOW, db=db_session, **kwargs
    )
    return result.relationship


# =============================================================================
# Helpers
# =============================================================================

class TestPermissionHelpers:
    """Tests for permission presets and email handling"""

    @pytest.mark.unit
    def test_normalize_email(self):
        assert normalize_email("  Fam@Example.COM ") == "fam@example.com"

    @pytest.mark.unit
    @pytest.mark.parametrize("email", ["", None, "not-an-email", "a@b"])
    def test_invalid_email(self, email):
        with pytest.raises(ValidationError):
            normalize_email(email)

    @pytest.mark.unit
    def test_limited_matches_view_only(self):
        assert ACCESS_LEVEL_PERMISSIONS[AccessLevel.LIMITED] == ACCESS_LEVEL_PERMISSIONS[AccessLevel.VIEW_ONLY]

    @pytest.mark.unit
    def test_full_grants_everything(self):
        assert all(derive_permissions(AccessLevel.FULL).values())

    @pytest.mark.unit
    def test_view_only_preset(self):
        permissions = derive_permissions(AccessLevel.VIEW_ONLY)

        assert permissions["can_view"] is True
        assert permissions["can_claim_responsibility"] is True
        assert permissions["can_receive_notifications"] is True
        assert permissions["can_edit"] is False
        assert permissions["can_create"] is False
        assert permissions["can_delete"] is False

    @pytest.mark.unit
    def test_overrides_apply(self):
        permissions = derive_permissions(AccessLevel.VIEW_ONLY, {"can_edit": True})

        assert permissions["can_edit"] is True
        assert permissions["can_delete"] is False

    @pytest.mark.unit
    def test_unknown_capability_rejected(self):
        with pytest.raises(ValidationError):
            derive_permissions(AccessLevel.FULL, {"can_fly": True})

    @pytest.mark.unit
    def test_relationship_id_is_deterministic(self):
        assert relationship_id_for("p1", "a@b.co") == relationship_id_for("p1", "a@b.co")
        assert relationship_id_for("p1", "a@b.co") != relationship_id_for("p2", "a@b.co")

    @pytest.mark.unit
    def test_invitation_tokens_are_unique(self):
        tokens = {generate_invitation_token() for _ in range(50)}

        assert len(tokens) == 50
        assert all(token.startswith("inv_") and len(token) > 30 for token in tokens)


class TestResolvePermissions:
    """Tests for capability resolution"""

    @pytest.mark.database
    def test_owner_has_everything(self, db_session, patient):
        permissions = resolve_permissions(db_session, patient.id, patient.id)

        assert all(permissions[cap.value] for cap in Capability)

    @pytest.mark.database
    def test_stranger_denied(self, db_session, patient, other_user):
        with pytest.raises(AuthorizationError):
            resolve_permissions(db_session, other_user.id, patient.id)

    @pytest.mark.database
    def test_family_member_gets_relationship_permissions(self, db_session, patient, family_member):
        link_family(db_session, patient, family_member, AccessLevel.VIEW_ONLY)

        permissions = resolve_permissions(db_session, family_member.id, patient.id)

        assert permissions["can_view"] is True
        assert permissions["can_edit"] is False

    @pytest.mark.asyncio
    async def test_require_capability_reports_missing(self, access_service, db_session, patient, family_member):
        link_family(db_session, patient, family_member, AccessLevel.VIEW_ONLY)

        with pytest.raises(AuthorizationError) as exc_info:
            await access_service.require_capability(
                family_member.id, patient.id, Capability.CAN_VIEW, Capability.CAN_DELETE, db=db_session
            )

        assert exc_info.value.details["missing"] == ["can_delete"]


# =============================================================================
# Invitations
# =============================================================================

class TestInviteFamilyMember:
    """Tests for creating invitations"""

    @pytest.mark.asyncio
    async def test_invite_creates_pending_relationship(self, access_service, mock_notifier, db_session, patient):
        result = await access_service.invite_family_member(
            patient.id, " Fam@Example.com ",
            invitee_name="Fran",
            access_level=AccessLevel.VIEW_ONLY,
            message="Please help me keep track",
            now=NOW,
            db=db_session
        )

        relationship = result.relationship
        assert relationship.id == relationship_id_for(patient.id, "fam@example.com")
        assert relationship.status == RelationshipStatus.PENDING
        assert relationship.family_member_email == "fam@example.com"
        assert relationship.family_member_id is None
        assert relationship.invitation_token.startswith("inv_")
        assert relationship.invitation_expires_at == NOW + timedelta(days=7)
        assert relationship.permissions["can_edit"] is False
        assert result.email.success is True

        message = mock_notifier.send_invitation.await_args.args[0]
        assert message.to_email == "fam@example.com"
        assert relationship.invitation_token in message.text_body
        assert "Please help me keep track" in message.text_body

    @pytest.mark.asyncio
    async def test_cannot_invite_self(self, access_service, db_session, patient):
        with pytest.raises(ValidationError):
            await invite(access_service, db_session, patient, email="PAT@example.com")

    @pytest.mark.asyncio
    async def test_family_member_cannot_invite(self, access_service, db_session, patient, family_member):
        link_family(db_session, patient, family_member)

        with pytest.raises(AuthorizationError):
            await invite(access_service, db_session, family_member, email="someone@example.com")

    @pytest.mark.asyncio
    async def test_duplicate_pending_invite_conflicts(self, access_service, db_session, patient):
        await invite(access_service, db_session, patient)

        with pytest.raises(ConflictError):
            await invite(access_service, db_session, patient, email="FAM@example.com")

    @pytest.mark.asyncio
    async def test_expired_invite_can_be_replaced(self, access_service, db_session, patient):
        first = await invite(access_service, db_session, patient)
        old_token = first.invitation_token

        result = await access_service.invite_family_member(
            patient.id, "fam@example.com", now=NOW + timedelta(days=8), db=db_session
        )

        assert result.relationship.id == first.id
        assert result.relationship.invitation_token != old_token
        assert result.relationship.invitation_expires_at == NOW + timedelta(days=15)

    @pytest.mark.asyncio
    async def test_active_relationship_conflicts(self, access_service, db_session, patient, family_member):
        link_family(db_session, patient, family_member)

        with pytest.raises(ConflictError):
            await invite(access_service, db_session, patient, email=family_member.email)

    @pytest.mark.asyncio
    async def test_email_failure_keeps_invitation(self, db_session, patient):
        notifier = AsyncMock()
        notifier.send_invitation = AsyncMock(return_value=NotificationResult(
            success=False, recipient="fam@example.com", error="Email provider not configured"
        ))
        service = AccessService(notifier=notifier)

        result = await service.invite_family_member(patient.id, "fam@example.com", now=NOW, db=db_session)

        assert result.email.success is False
        assert db_session.get(Relationship, result.relationship.id).status == RelationshipStatus.PENDING

    @pytest.mark.asyncio
    async def test_notifier_crash_is_reported(self, db_session, patient):
        notifier = AsyncMock()
        notifier.send_invitation = AsyncMock(side_effect=RuntimeError("smtp down"))
        service = AccessService(notifier=notifier)

        result = await service.invite_family_member(patient.id, "fam@example.com", now=NOW, db=db_session)

        assert result.email.success is False
        assert "smtp down" in result.email.error


class TestInvitationPreview:
    """Tests for the public invitation preview and resend"""

    @pytest.mark.asyncio
    async def test_preview(self, access_service, db_session, patient):
        relationship = await invite(access_service, db_session, patient, message="Hi!")

        preview = await access_service.get_invitation(relationship.invitation_token, now=NOW, db=db_session)

        assert preview["patient_name"] == "Pat Patient"
        assert preview["family_member_email"] == "fam@example.com"
        assert preview["message"] == "Hi!"
        assert preview["status"] == "pending"

    @pytest.mark.asyncio
    async def test_preview_expired(self, access_service, db_session, patient):
        relationship = await invite(access_service, db_session, patient)

        with pytest.raises(ExpiredError):
            await access_service.get_invitation(
                relationship.invitation_token, now=NOW + timedelta(days=8), db=db_session
            )

    @pytest.mark.asyncio
    async def test_preview_unknown_token(self, access_service, db_session):
        with pytest.raises(NotFoundError):
            await access_service.get_invitation("inv_nope", now=NOW, db=db_session)

    @pytest.mark.asyncio
    async def test_resend_rotates_token(self, access_service, mock_notifier, db_session, patient):
        relationship = await invite(access_service, db_session, patient)
        old_token = relationship.invitation_token

        result = await access_service.resend_invitation(
            relationship.id, patient.id, now=NOW + timedelta(days=3), db=db_session
        )

        assert result.relationship.invitation_token != old_token
        assert result.relationship.invitation_expires_at == NOW + timedelta(days=10)
        assert mock_notifier.send_invitation.await_count == 2

    @pytest.mark.asyncio
    async def test_resend_by_other_user_denied(self, access_service, db_session, patient, other_user):
        relationship = await invite(access_service, db_session, patient)

        with pytest.raises(AuthorizationError):
            await access_service.resend_invitation(relationship.id, other_user.id, db=db_session)


# =============================================================================
# Acceptance
# =============================================================================

class TestAcceptInvitation:
    """Tests for accepting invitations"""

    @pytest.mark.asyncio
    async def test_accept_links_both_profiles(self, access_service, db_session, patient, family_member):
        relationship = await invite(access_service, db_session, patient)
        token = relationship.invitation_token

        accepted = await access_service.accept_invitation(
            token, family_member.id, now=NOW + timedelta(hours=1), db=db_session
        )

        assert accepted.status == RelationshipStatus.ACTIVE
        assert accepted.family_member_id == family_member.id
        assert accepted.invitation_token is None
        assert accepted.accepted_token == token
        assert accepted.accepted_at == NOW + timedelta(hours=1)

        db_session.refresh(family_member)
        db_session.refresh(patient)
        assert family_member.user_type == UserType.FAMILY_MEMBER
        assert family_member.linked_patient_ids == [patient.id]
        assert family_member.primary_patient_id == patient.id
        assert patient.family_member_ids == [family_member.id]

    @pytest.mark.asyncio
    async def test_second_accept_conflicts(self, access_service, db_session, patient, family_member, other_user):
        relationship = await invite(access_service, db_session, patient)
        token = relationship.invitation_token
        await access_service.accept_invitation(token, family_member.id, now=NOW, db=db_session)

        with pytest.raises(ConflictError):
            await access_service.accept_invitation(token, family_member.id, now=NOW, db=db_session)
        with pytest.raises(ConflictError):
            await access_service.accept_invitation(token, other_user.id, now=NOW, db=db_session)

    @pytest.mark.asyncio
    async def test_accept_expired(self, access_service, db_session, patient, family_member):
        relationship = await invite(access_service, db_session, patient)

        with pytest.raises(ExpiredError):
            await access_service.accept_invitation(
                relationship.invitation_token, family_member.id,
                now=NOW + timedelta(days=7, minutes=1), db=db_session
            )

    @pytest.mark.asyncio
    async def test_accept_unknown_token(self, access_service, db_session, family_member):
        with pytest.raises(NotFoundError):
            await access_service.accept_invitation("inv_missing", family_member.id, now=NOW, db=db_session)

    @pytest.mark.asyncio
    async def test_patient_cannot_accept_own_invitation(self, access_service, db_session, patient):
        relationship = await invite(access_service, db_session, patient)

        with pytest.raises(ValidationError):
            await access_service.accept_invitation(
                relationship.invitation_token, patient.id, now=NOW, db=db_session
            )

    @pytest.mark.asyncio
    async def test_interleaved_acceptance_only_one_wins(
        self, access_service, db_session, test_engine, patient, family_member, other_user
    ):
        """Both callers pass the pre-checks before either commits"""
        relationship = await invite(access_service, db_session, patient)
        token = relationship.invitation_token
        Session = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
        session_a, session_b = Session(), Session()

        try:
            invitation_a = access_service._load_pending_invitation(session_a, token, family_member.id, NOW)
            invitation_b = access_service._load_pending_invitation(session_b, token, other_user.id, NOW)

            winner = run_in_transaction(
                session_a,
                lambda s: access_service._apply_acceptance(s, invitation_a.id, token, family_member.id, NOW)
            )
            winner_member_id = winner.family_member_id
            with pytest.raises(ConflictError):
                run_in_transaction(
                    session_b,
                    lambda s: access_service._apply_acceptance(s, invitation_b.id, token, other_user.id, NOW)
                )
        finally:
            session_a.close()
            session_b.close()

        assert winner_member_id == family_member.id
        db_session.expire_all()
        loser = db_session.get(UserProfile, other_user.id)
        assert loser.linked_patient_ids == []
        assert db_session.get(UserProfile, patient.id).family_member_ids == [family_member.id]


# =============================================================================
# Revocation and Listing
# =============================================================================

class TestRevokeAccess:
    """Tests for revoking relationships"""

    @pytest.mark.asyncio
    async def test_revoke_removes_links_and_access(self, access_service, db_session, patient, family_member):
        relationship = link_family(db_session, patient, family_member)

        revoked = await access_service.revoke_access(
            relationship.id, patient.id, reason="Moved away", now=NOW, db=db_session
        )

        assert revoked.status == RelationshipStatus.REVOKED
        assert revoked.revoked_by == patient.id
        assert revoked.revocation_reason == "Moved away"
        db_session.refresh(family_member)
        db_session.refresh(patient)
        assert family_member.linked_patient_ids == []
        assert family_member.primary_patient_id is None
        assert patient.family_member_ids == []
        with pytest.raises(AuthorizationError):
            resolve_permissions(db_session, family_member.id, patient.id)

    @pytest.mark.asyncio
    async def test_revoke_twice_conflicts(self, access_service, db_session, patient, family_member):
        relationship = link_family(db_session, patient, family_member)
        await access_service.revoke_access(relationship.id, patient.id, now=NOW, db=db_session)

        with pytest.raises(ConflictError):
            await access_service.revoke_access(relationship.id, patient.id, now=NOW, db=db_session)

    @pytest.mark.asyncio
    async def test_family_member_cannot_revoke(self, access_service, db_session, patient, family_member):
        relationship = link_family(db_session, patient, family_member)

        with pytest.raises(AuthorizationError):
            await access_service.revoke_access(relationship.id, family_member.id, now=NOW, db=db_session)

    @pytest.mark.asyncio
    async def test_revoked_member_can_be_invited_again(self, access_service, db_session, patient, family_member):
        relationship = link_family(db_session, patient, family_member)
        await access_service.revoke_access(relationship.id, patient.id, now=NOW, db=db_session)

        again = await invite(access_service, db_session, patient, email=family_member.email)

        assert again.id == relationship.id
        assert again.status == RelationshipStatus.PENDING
        assert again.revoked_at is None

    @pytest.mark.asyncio
    async def test_cancelled_invitation_token_is_dead(self, access_service, db_session, patient, family_member):
        relationship = await invite(access_service, db_session, patient)
        token = relationship.invitation_token
        await access_service.revoke_access(relationship.id, patient.id, now=NOW, db=db_session)

        with pytest.raises(NotFoundError):
            await access_service.accept_invitation(token, family_member.id, now=NOW, db=db_session)


class TestListFamilyAccess:
    """Tests for listing both sides of the relationship graph"""

    @pytest.mark.asyncio
    async def test_patient_and_member_views(self, access_service, db_session, patient, family_member):
        link_family(db_session, patient, family_member)
        await invite(access_service, db_session, patient, email="cousin@example.com")

        patient_view = await access_service.list_family_access(patient.id, db=db_session)
        member_view = await access_service.list_family_access(family_member.id, db=db_session)

        assert [m["family_member_id"] for m in patient_view["family_members_with_access_to_me"]] == [family_member.id]
        assert [p["family_member_email"] for p in patient_view["pending_invitations"]] == ["cousin@example.com"]
        assert patient_view["total_connections"] == 1
        assert [p["patient_id"] for p in member_view["patients_i_have_access_to"]] == [patient.id]
        assert member_view["patients_i_have_access_to"][0]["patient_name"] == "Pat Patient"


# =============================================================================
# Link Repair
# =============================================================================

class TestLinkRepair:
    """Tests for re-deriving reciprocal links"""

    @pytest.mark.asyncio
    async def test_get_profile_repairs_missing_links(self, access_service, db_session, patient, family_member):
        link_family(db_session, patient, family_member)
        family_member.linked_patient_ids = []
        family_member.primary_patient_id = None
        patient.family_member_ids = []
        db_session.commit()

        profile = await access_service.get_profile(family_member.id, now=NOW, db=db_session)

        assert profile.linked_patient_ids == [patient.id]
        assert profile.primary_patient_id == patient.id
        assert profile.repair_reason == "auto_repair_missing_patient_links"
        db_session.refresh(patient)
        assert patient.family_member_ids == [family_member.id]

    @pytest.mark.asyncio
    async def test_consistent_profile_untouched(self, access_service, db_session, patient, family_member):
        link_family(db_session, patient, family_member)

        report = await access_service.repair_family_links(family_member.id, now=NOW, db=db_session)

        assert report["repaired"] is False
        assert report["linked_patient_ids"] == [patient.id]

    @pytest.mark.asyncio
    async def test_repair_by_email_fallback(self, access_service, db_session, patient, family_member):
        db_session.add(Relationship(
            id=relationship_id_for(patient.id, family_member.email),
            patient_id=patient.id,
            family_member_id=None,
            family_member_email=family_member.email,
            access_level=AccessLevel.FULL,
            permissions=derive_permissions(AccessLevel.FULL),
            status=RelationshipStatus.ACTIVE,
            invited_at=NOW - timedelta(days=3),
            accepted_at=NOW - timedelta(days=2),
        ))
        db_session.commit()

        report = await access_service.repair_family_links(family_member.id, now=NOW, db=db_session)

        assert report["repaired"] is True
        assert report["relationships_repaired"] == 1
        assert report["patients_updated"] == 1
        assert report["linked_patient_ids"] == [patient.id]
        relationship = db_session.get(Relationship, relationship_id_for(patient.id, family_member.email))
        assert relationship.family_member_id == family_member.id
        assert relationship.repair_reason == "missing_family_member_id"

    @pytest.mark.asyncio
    async def test_unknown_profile(self, access_service, db_session):
        with pytest.raises(NotFoundError):
            await access_service.get_profile("ghost", db=db_session)
