"""
Medication Service
Business logic for medication management
"""

import logging
from typing import Dict, List, Optional, Any
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy import and_

from database import get_db_context
from exceptions import NotFoundError, ValidationError
import models
from models import Capability, DoseStatus
from services.access_service import check_capability


logger = logging.getLogger(__name__)


class MedicationService:
    """
    Service for medication-related operations
    """

    UPDATABLE_FIELDS = {"name", "generic_name", "dosage", "instructions", "purpose", "is_prn"}

    async def add_medication(
        self,
        patient_id: str,
        actor_id: str,
        name: str,
        dosage: str,
        generic_name: Optional[str] = None,
        instructions: Optional[str] = None,
        purpose: Optional[str] = None,
        is_prn: bool = False,
        db: Optional[Session] = None
    ) -> models.Medication:
        """
        Add a new medication for a patient

        Args:
            patient_id: Owning patient
            actor_id: Caller (the patient, or a family member with can_create)
            name: Medication name
            dosage: Dosage (e.g., "500mg")
            generic_name: Generic drug name
            instructions: Special instructions
            purpose: Why medication is prescribed
            is_prn: Taken as needed rather than on a schedule
            db: Database session

        Returns:
            Created Medication object
        """
        if not name or not name.strip():
            raise ValidationError("Medication name is required")
        if not dosage or not dosage.strip():
            raise ValidationError("Dosage is required")

        def _add(session: Session) -> models.Medication:
            check_capability(session, actor_id, patient_id, Capability.CAN_CREATE)

            if not session.get(models.UserProfile, patient_id):
                raise NotFoundError(f"Patient {patient_id} not found")

            medication = models.Medication(
                patient_id=patient_id,
                name=name.strip(),
                generic_name=generic_name,
                dosage=dosage.strip(),
                instructions=instructions,
                purpose=purpose,
                is_prn=bool(is_prn),
                is_active=True,
                created_by=actor_id
            )

            session.add(medication)
            session.commit()
            session.refresh(medication)

            logger.info(f"Added medication {medication.name} for patient {patient_id}")
            return medication

        if db:
            return _add(db)

        with get_db_context() as session:
            return _add(session)

    async def get_medication(
        self,
        medication_id: int,
        actor_id: str,
        db: Optional[Session] = None
    ) -> models.Medication:
        """Get medication by ID"""
        def _get(session: Session) -> models.Medication:
            medication = session.get(models.Medication, medication_id)
            if not medication:
                raise NotFoundError(f"Medication {medication_id} not found")
            check_capability(session, actor_id, medication.patient_id, Capability.CAN_VIEW)
            return medication

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def get_patient_medications(
        self,
        patient_id: str,
        actor_id: str,
        active_only: bool = True,
        db: Optional[Session] = None
    ) -> List[models.Medication]:
        """Get all medications for a patient"""
        def _get(session: Session) -> List[models.Medication]:
            check_capability(session, actor_id, patient_id, Capability.CAN_VIEW)

            query = session.query(models.Medication).filter(
                models.Medication.patient_id == patient_id
            )

            if active_only:
                query = query.filter(models.Medication.is_active == True)

            return query.order_by(models.Medication.name).all()

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def update_medication(
        self,
        medication_id: int,
        actor_id: str,
        updates: Dict[str, Any],
        db: Optional[Session] = None
    ) -> models.Medication:
        """Update medication information"""
        def _update(session: Session) -> models.Medication:
            medication = session.get(models.Medication, medication_id)
            if not medication:
                raise NotFoundError(f"Medication {medication_id} not found")

            check_capability(session, actor_id, medication.patient_id, Capability.CAN_EDIT)

            for field, value in updates.items():
                if field not in self.UPDATABLE_FIELDS:
                    continue
                if field in ("name", "dosage") and (value is None or not str(value).strip()):
                    raise ValidationError(f"{field} cannot be empty")
                if field == "is_prn":
                    value = bool(value)
                setattr(medication, field, value)

            medication.updated_at = datetime.utcnow()
            session.commit()
            session.refresh(medication)

            return medication

        if db:
            return _update(db)

        with get_db_context() as session:
            return _update(session)

    async def deactivate_medication(
        self,
        medication_id: int,
        actor_id: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Soft-deactivate a medication

        Its schedules are deactivated and future scheduled dose events are
        cancelled; past events keep their history.
        """
        now = now or datetime.utcnow()

        def _deactivate(session: Session) -> Dict[str, Any]:
            medication = session.get(models.Medication, medication_id)
            if not medication:
                raise NotFoundError(f"Medication {medication_id} not found")

            check_capability(session, actor_id, medication.patient_id, Capability.CAN_DELETE)

            medication.is_active = False
            medication.deactivated_at = now
            medication.deactivated_by = actor_id

            schedules_deactivated = session.query(models.MedicationSchedule).filter(
                and_(
                    models.MedicationSchedule.medication_id == medication_id,
                    models.MedicationSchedule.is_active == True
                )
            ).update(
                {
                    models.MedicationSchedule.is_active: False,
                    models.MedicationSchedule.updated_at: now,
                },
                synchronize_session=False
            )

            events_cancelled = session.query(models.DoseEvent).filter(
                and_(
                    models.DoseEvent.medication_id == medication_id,
                    models.DoseEvent.status == DoseStatus.SCHEDULED,
                    models.DoseEvent.scheduled_at > now
                )
            ).update(
                {
                    models.DoseEvent.status: DoseStatus.CANCELLED,
                    models.DoseEvent.version: models.DoseEvent.version + 1,
                    models.DoseEvent.updated_at: now,
                },
                synchronize_session=False
            )

            session.commit()
            session.refresh(medication)

            logger.info(
                f"Deactivated medication {medication_id}: {schedules_deactivated} schedules, "
                f"{events_cancelled} future events cancelled"
            )
            return {
                "medication": medication,
                "schedules_deactivated": schedules_deactivated,
                "events_cancelled": events_cancelled,
            }

        if db:
            return _deactivate(db)

        with get_db_context() as session:
            return _deactivate(session)


# Singleton instance
medication_service = MedicationService()
