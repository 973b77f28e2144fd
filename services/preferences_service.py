"""
Preferences Service
Time-of-day slot definitions used to group a patient's doses
"""

import logging
from typing import Dict, Optional
from datetime import datetime
from sqlalchemy.orm import Session

from database import get_db_context
from exceptions import NotFoundError, ValidationError
import models
from models import Capability, TimeSlot, WorkSchedule
from services.access_service import check_capability
from services.time_utils import HHMM_PATTERN, is_time_in_range


logger = logging.getLogger(__name__)


SlotMap = Dict[str, Dict[str, str]]

DEFAULT_TIME_SLOTS: Dict[WorkSchedule, SlotMap] = {
    WorkSchedule.STANDARD: {
        "morning": {"start": "06:00", "end": "10:00", "default_time": "07:00"},
        "noon": {"start": "11:00", "end": "14:00", "default_time": "12:00"},
        "evening": {"start": "17:00", "end": "20:00", "default_time": "18:00"},
        "bedtime": {"start": "21:00", "end": "23:59", "default_time": "22:00"},
    },
    WorkSchedule.NIGHT_SHIFT: {
        "morning": {"start": "14:00", "end": "18:00", "default_time": "15:00"},
        "noon": {"start": "19:00", "end": "22:00", "default_time": "20:00"},
        "evening": {"start": "23:00", "end": "02:00", "default_time": "00:00"},
        "bedtime": {"start": "06:00", "end": "10:00", "default_time": "08:00"},
    },
}

# Order in which slots are matched against a time of day
SLOT_ORDER = [TimeSlot.MORNING, TimeSlot.NOON, TimeSlot.EVENING, TimeSlot.BEDTIME]


def default_time_slots(work_schedule: WorkSchedule = WorkSchedule.STANDARD) -> SlotMap:
    return {slot: dict(spec) for slot, spec in DEFAULT_TIME_SLOTS[WorkSchedule(work_schedule)].items()}


def slot_for_time(time_slots: SlotMap, hhmm: str) -> Optional[TimeSlot]:
    """First slot whose (possibly midnight-wrapping) range contains hhmm"""
    for slot in SLOT_ORDER:
        spec = time_slots.get(slot.value)
        if spec and is_time_in_range(hhmm, spec["start"], spec["end"]):
            return slot
    return None


def validate_time_slots(time_slots: SlotMap) -> SlotMap:
    """
    Validate a full slot map.

    Every slot needs start, end and default_time in HH:MM form, and the
    default time must fall inside the slot's own range.
    """
    validated: SlotMap = {}
    for slot in SLOT_ORDER:
        spec = time_slots.get(slot.value)
        if not spec:
            raise ValidationError(f"Missing time slot: {slot.value}")

        for field in ("start", "end", "default_time"):
            value = spec.get(field)
            if not isinstance(value, str) or not HHMM_PATTERN.match(value):
                raise ValidationError(
                    f"Invalid {field} for {slot.value} slot (expected HH:MM): {value!r}"
                )

        if not is_time_in_range(spec["default_time"], spec["start"], spec["end"]):
            raise ValidationError(
                f"Default time {spec['default_time']} is outside the {slot.value} range "
                f"{spec['start']}-{spec['end']}"
            )

        validated[slot.value] = {
            "start": spec["start"],
            "end": spec["end"],
            "default_time": spec["default_time"],
        }

    unknown = set(time_slots) - {slot.value for slot in SLOT_ORDER}
    if unknown:
        raise ValidationError(f"Unknown time slots: {', '.join(sorted(unknown))}")

    return validated


class PreferencesService:
    """
    Service for patient time slot preferences
    """

    def load_time_slots(self, session: Session, patient_id: str) -> SlotMap:
        """Stored slot map for a patient, or the standard defaults"""
        preferences = session.get(models.PatientPreferences, patient_id)
        if preferences and preferences.time_slots:
            return dict(preferences.time_slots)
        work_schedule = preferences.work_schedule if preferences else WorkSchedule.STANDARD
        return default_time_slots(work_schedule)

    async def get_preferences(
        self,
        patient_id: str,
        actor_id: str,
        db: Optional[Session] = None
    ) -> Dict:
        def _get(session: Session) -> Dict:
            check_capability(session, actor_id, patient_id, Capability.CAN_VIEW)

            preferences = session.get(models.PatientPreferences, patient_id)
            return {
                "patient_id": patient_id,
                "work_schedule": (preferences.work_schedule if preferences else WorkSchedule.STANDARD).value,
                "time_slots": self.load_time_slots(session, patient_id),
                "is_default": preferences is None,
                "updated_at": preferences.updated_at if preferences else None,
            }

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def update_preferences(
        self,
        patient_id: str,
        actor_id: str,
        work_schedule: Optional[WorkSchedule] = None,
        time_slots: Optional[SlotMap] = None,
        db: Optional[Session] = None
    ) -> Dict:
        """
        Update a patient's slot preferences

        Switching work schedule without explicit slots resets to that
        schedule's defaults.
        """
        def _update(session: Session) -> Dict:
            check_capability(session, actor_id, patient_id, Capability.CAN_VIEW, Capability.CAN_EDIT)

            if not session.get(models.UserProfile, patient_id):
                raise NotFoundError("Patient not found")

            preferences = session.get(models.PatientPreferences, patient_id)
            if not preferences:
                preferences = models.PatientPreferences(
                    patient_id=patient_id,
                    work_schedule=WorkSchedule.STANDARD,
                )
                session.add(preferences)

            schedule = WorkSchedule(work_schedule) if work_schedule else preferences.work_schedule or WorkSchedule.STANDARD

            if time_slots is not None:
                slots = validate_time_slots(time_slots)
            elif work_schedule and work_schedule != preferences.work_schedule:
                slots = default_time_slots(schedule)
            else:
                slots = dict(preferences.time_slots or default_time_slots(schedule))

            preferences.work_schedule = schedule
            preferences.time_slots = slots
            preferences.updated_by = actor_id
            preferences.updated_at = datetime.utcnow()

            session.commit()
            session.refresh(preferences)

            logger.info(f"Updated time slot preferences for patient {patient_id}")
            return {
                "patient_id": patient_id,
                "work_schedule": preferences.work_schedule.value,
                "time_slots": dict(preferences.time_slots),
                "is_default": False,
                "updated_at": preferences.updated_at,
            }

        if db:
            return _update(db)

        with get_db_context() as session:
            return _update(session)


# Singleton instance
preferences_service = PreferencesService()
