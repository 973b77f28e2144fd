"""
Tests for Medication and User Services
Tests medication CRUD, soft deactivation and profile bootstrap
"""

import pytest
from datetime import timedelta

from exceptions import AuthorizationError, NotFoundError, ValidationError
from models import AccessLevel, DoseEvent, DoseStatus, MedicationSchedule, UserType
from services.medication_service import MedicationService
from services.schedule_service import expand_schedule
from services.user_service import UserService
from tests.conftest import NOW, link_family


@pytest.fixture
def medication_service():
    """Create medication service instance"""
    return MedicationService()


class TestAddMedication:
    """Tests for adding medications"""

    @pytest.mark.asyncio
    async def test_add_for_self(self, medication_service, db_session, patient):
        medication = await medication_service.add_medication(
            patient.id, patient.id, "  Lisinopril ", "10mg",
            purpose="Blood pressure", db=db_session
        )

        assert medication.id is not None
        assert medication.name == "Lisinopril"
        assert medication.is_active is True
        assert medication.created_by == patient.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name,dosage", [("", "10mg"), ("Lisinopril", "  ")])
    async def test_name_and_dosage_required(self, medication_service, db_session, patient, name, dosage):
        with pytest.raises(ValidationError):
            await medication_service.add_medication(patient.id, patient.id, name, dosage, db=db_session)

    @pytest.mark.asyncio
    async def test_family_with_create_permission(self, medication_service, db_session, patient, family_member):
        link_family(db_session, patient, family_member, AccessLevel.FULL)

        medication = await medication_service.add_medication(
            patient.id, family_member.id, "Aspirin", "81mg", db=db_session
        )

        assert medication.patient_id == patient.id
        assert medication.created_by == family_member.id

    @pytest.mark.asyncio
    async def test_view_only_family_denied(self, medication_service, db_session, patient, family_member):
        link_family(db_session, patient, family_member, AccessLevel.VIEW_ONLY)

        with pytest.raises(AuthorizationError):
            await medication_service.add_medication(patient.id, family_member.id, "Aspirin", "81mg", db=db_session)


class TestReadAndUpdate:
    """Tests for reading and updating medications"""

    @pytest.mark.asyncio
    async def test_get_medication(self, medication_service, db_session, patient, medication):
        found = await medication_service.get_medication(medication.id, patient.id, db=db_session)

        assert found.name == "Sertraline"

    @pytest.mark.asyncio
    async def test_get_missing(self, medication_service, db_session, patient):
        with pytest.raises(NotFoundError):
            await medication_service.get_medication(999, patient.id, db=db_session)

    @pytest.mark.asyncio
    async def test_stranger_cannot_read(self, medication_service, db_session, other_user, medication):
        with pytest.raises(AuthorizationError):
            await medication_service.get_medication(medication.id, other_user.id, db=db_session)

    @pytest.mark.asyncio
    async def test_list_sorted_and_filtered(self, medication_service, db_session, patient, medication):
        aspirin = await medication_service.add_medication(patient.id, patient.id, "Aspirin", "81mg", db=db_session)
        await medication_service.deactivate_medication(aspirin.id, patient.id, now=NOW, db=db_session)
        await medication_service.add_medication(patient.id, patient.id, "Zinc", "50mg", db=db_session)

        active = await medication_service.get_patient_medications(patient.id, patient.id, db=db_session)
        everything = await medication_service.get_patient_medications(
            patient.id, patient.id, active_only=False, db=db_session
        )

        assert [m.name for m in active] == ["Sertraline", "Zinc"]
        assert [m.name for m in everything] == ["Aspirin", "Sertraline", "Zinc"]

    @pytest.mark.asyncio
    async def test_update_ignores_unknown_fields(self, medication_service, db_session, patient, medication):
        updated = await medication_service.update_medication(
            medication.id, patient.id,
            {"dosage": "1000mg", "patient_id": "someone-else", "is_active": False},
            db=db_session
        )

        assert updated.dosage == "1000mg"
        assert updated.patient_id == patient.id
        assert updated.is_active is True

    @pytest.mark.asyncio
    async def test_update_rejects_blank_name(self, medication_service, db_session, patient, medication):
        with pytest.raises(ValidationError):
            await medication_service.update_medication(medication.id, patient.id, {"name": " "}, db=db_session)


class TestDeactivateMedication:
    """Tests for soft deactivation"""

    @pytest.mark.asyncio
    async def test_deactivation_cancels_future_doses(
        self, medication_service, db_session, patient, medication, schedule
    ):
        expand_schedule(db_session, schedule, now=NOW)

        result = await medication_service.deactivate_medication(medication.id, patient.id, now=NOW, db=db_session)

        assert result["medication"].is_active is False
        assert result["medication"].deactivated_by == patient.id
        assert result["schedules_deactivated"] == 1
        # The dose at NOW itself is not in the future
        assert result["events_cancelled"] == 29

        db_session.expire_all()
        assert db_session.get(MedicationSchedule, schedule.id).is_active is False
        remaining = db_session.query(DoseEvent).filter(DoseEvent.status == DoseStatus.SCHEDULED).all()
        assert [e.scheduled_at for e in remaining] == [NOW]
        cancelled = db_session.query(DoseEvent).filter(DoseEvent.status == DoseStatus.CANCELLED).first()
        assert cancelled.version == 2

    @pytest.mark.asyncio
    async def test_deactivation_needs_delete_permission(
        self, medication_service, db_session, patient, family_member, medication
    ):
        link_family(db_session, patient, family_member, AccessLevel.VIEW_ONLY, {"can_edit": True})

        with pytest.raises(AuthorizationError):
            await medication_service.deactivate_medication(medication.id, family_member.id, db=db_session)


class TestUserProfiles:
    """Tests for profile bootstrap from identity headers"""

    @pytest.mark.asyncio
    async def test_first_sight_creates_patient(self, db_session):
        profile = await UserService().get_or_create_profile("new-uid", " New@Example.com ", "Newbie", db=db_session)

        assert profile.email == "new@example.com"
        assert profile.user_type == UserType.PATIENT
        assert profile.linked_patient_ids == []

    @pytest.mark.asyncio
    async def test_existing_profile_returned(self, db_session, patient):
        profile = await UserService().get_or_create_profile(patient.id, patient.email, db=db_session)

        assert profile is patient

    @pytest.mark.asyncio
    async def test_update_timezone(self, db_session, patient):
        profile = await UserService().update_timezone(patient.id, "Europe/Berlin", db=db_session)

        assert profile.timezone == "Europe/Berlin"

    @pytest.mark.asyncio
    async def test_unknown_timezone(self, db_session, patient):
        with pytest.raises(ValidationError):
            await UserService().update_timezone(patient.id, "Mars/Olympus_Mons", db=db_session)
