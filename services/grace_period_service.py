"""
Grace Period Service
How long after its scheduled time a dose may still be taken before it counts as missed
"""

import calendar
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, FrozenSet, List, Optional
from datetime import date, datetime, timedelta
from sqlalchemy.orm import Session

from config import settings, engine_config
from database import get_db_context
from exceptions import NotFoundError, ValidationError
import models
from models import Capability, MedicationType, TimeSlot
from services.access_service import check_capability
from services.preferences_service import SlotMap, slot_for_time
from services.time_utils import format_hhmm, utc_to_local


logger = logging.getLogger(__name__)


@dataclass
class GraceResolution:
    """Grace minutes for one event and where the value came from"""
    minutes: int
    source: str  # medication_override | slot | patient_default | system_default | medication_type
    slot: Optional[TimeSlot] = None
    medication_type: Optional[MedicationType] = None
    multiplier: float = 1.0
    applied_rules: List[str] = field(default_factory=list)


def classify_medication(medication: Optional[models.Medication]) -> MedicationType:
    """Grace class from the PRN flag, then name keywords; unknown drugs are standard"""
    if medication is None:
        return MedicationType.STANDARD
    if medication.is_prn:
        return MedicationType.PRN

    names = f"{medication.name or ''} {medication.generic_name or ''}".lower()
    if any(keyword in names for keyword in engine_config.CRITICAL_MEDICATION_KEYWORDS):
        return MedicationType.CRITICAL
    if any(keyword in names for keyword in engine_config.VITAMIN_KEYWORDS):
        return MedicationType.VITAMIN
    return MedicationType.STANDARD


def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def _last_weekday(year: int, month: int, weekday: int) -> date:
    last = date(year, month, calendar.monthrange(year, month)[1])
    return last - timedelta(days=(last.weekday() - weekday) % 7)


@lru_cache(maxsize=16)
def us_holidays(year: int) -> FrozenSet[date]:
    """US federal holidays on their calendar dates (no observed-day shifting)"""
    return frozenset({
        date(year, 1, 1),
        _nth_weekday(year, 1, calendar.MONDAY, 3),      # Martin Luther King Jr. Day
        _nth_weekday(year, 2, calendar.MONDAY, 3),      # Presidents Day
        _last_weekday(year, 5, calendar.MONDAY),        # Memorial Day
        date(year, 7, 4),
        _nth_weekday(year, 9, calendar.MONDAY, 1),      # Labor Day
        _nth_weekday(year, 10, calendar.MONDAY, 2),     # Columbus Day
        date(year, 11, 11),
        _nth_weekday(year, 11, calendar.THURSDAY, 4),   # Thanksgiving
        date(year, 12, 25),
    })


def _validate_minutes(value, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be a whole number of minutes")
    if value < 0 or value > engine_config.MAX_GRACE_MINUTES:
        raise ValidationError(
            f"{label} must be between 0 and {engine_config.MAX_GRACE_MINUTES} minutes"
        )
    return value


def _validate_multiplier(value, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{label} must be a number")
    if value < 1 or value > engine_config.MAX_GRACE_MULTIPLIER:
        raise ValidationError(f"{label} must be between 1 and {engine_config.MAX_GRACE_MULTIPLIER}")
    return float(value)


def resolve_grace(
    config: Optional[models.GracePeriodConfig],
    medication_id: int,
    scheduled_at: datetime,
    time_slots: SlotMap,
    tz_name: Optional[str],
    medication_type: Optional[MedicationType] = None
) -> GraceResolution:
    """
    Resolve the grace period for a single event.

    The base value is the medication override, then the patient's grace for
    the slot containing the event's local time of day, then the patient
    default, then the system default for that slot.

    A medication override is final. Otherwise the medication type caps the
    base with min(): the patient's rule for that type always applies, the
    system rule only on top of a system default. Weekend and holiday
    multipliers for the event's local date are applied last.
    """
    local = utc_to_local(scheduled_at, tz_name)
    slot = slot_for_time(time_slots, format_hhmm(local.time()))
    medication_type = MedicationType(medication_type) if medication_type else None

    if config:
        overrides = config.medication_overrides or {}
        if str(medication_id) in overrides:
            return GraceResolution(
                int(overrides[str(medication_id)]), "medication_override", slot, medication_type,
                applied_rules=["medication_override"]
            )

    slot_minutes = (config.slot_grace_minutes or {}) if config else {}
    if slot and slot.value in slot_minutes:
        minutes, source = int(slot_minutes[slot.value]), "slot"
        rules = [f"slot_{slot.value}"]
    elif config and config.default_grace_minutes is not None:
        minutes, source = int(config.default_grace_minutes), "patient_default"
        rules = ["patient_default"]
    else:
        if slot:
            minutes = engine_config.SLOT_GRACE_MINUTES.get(slot.value, settings.DEFAULT_GRACE_MINUTES)
            rules = [f"system_default_{slot.value}"]
        else:
            minutes = settings.DEFAULT_GRACE_MINUTES
            rules = ["system_default"]
        source = "system_default"

    if medication_type:
        patient_rules = (config.medication_type_rules or {}) if config else {}
        type_minutes = patient_rules.get(medication_type.value)
        if type_minutes is None and source == "system_default":
            type_minutes = engine_config.MEDICATION_TYPE_GRACE_MINUTES.get(medication_type.value)
        if type_minutes is not None and int(type_minutes) < minutes:
            minutes, source = int(type_minutes), "medication_type"
            rules.append(f"type_{medication_type.value}")

    multiplier = 1.0
    local_day = local.date()
    weekend = (config.weekend_multiplier if config else None) or engine_config.WEEKEND_GRACE_MULTIPLIER
    holiday = (config.holiday_multiplier if config else None) or engine_config.HOLIDAY_GRACE_MULTIPLIER
    if local_day.weekday() >= 5 and weekend != 1.0:
        multiplier *= weekend
        rules.append("weekend_multiplier")
    if local_day in us_holidays(local_day.year) and holiday != 1.0:
        multiplier *= holiday
        rules.append("holiday_multiplier")

    if multiplier != 1.0:
        minutes = min(round(minutes * multiplier), engine_config.MAX_GRACE_MINUTES)

    return GraceResolution(minutes, source, slot, medication_type, multiplier, rules)


class GracePeriodService:
    """
    Service for per-patient grace period configuration
    """

    def _serialize(self, patient_id: str, config: Optional[models.GracePeriodConfig]) -> Dict:
        return {
            "patient_id": patient_id,
            "default_grace_minutes": config.default_grace_minutes if config else None,
            "slot_grace_minutes": dict(config.slot_grace_minutes or {}) if config else {},
            "medication_overrides": dict(config.medication_overrides or {}) if config else {},
            "medication_type_rules": dict(config.medication_type_rules or {}) if config else {},
            "weekend_multiplier": config.weekend_multiplier if config else None,
            "holiday_multiplier": config.holiday_multiplier if config else None,
            "system_default_minutes": settings.DEFAULT_GRACE_MINUTES,
            "system_slot_minutes": dict(engine_config.SLOT_GRACE_MINUTES),
            "system_type_minutes": dict(engine_config.MEDICATION_TYPE_GRACE_MINUTES),
            "system_weekend_multiplier": engine_config.WEEKEND_GRACE_MULTIPLIER,
            "system_holiday_multiplier": engine_config.HOLIDAY_GRACE_MULTIPLIER,
            "updated_at": config.updated_at if config else None,
        }

    async def get_config(
        self,
        patient_id: str,
        actor_id: str,
        db: Optional[Session] = None
    ) -> Dict:
        def _get(session: Session) -> Dict:
            check_capability(session, actor_id, patient_id, Capability.CAN_VIEW)
            return self._serialize(patient_id, session.get(models.GracePeriodConfig, patient_id))

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def upsert_config(
        self,
        patient_id: str,
        actor_id: str,
        default_grace_minutes: Optional[int] = None,
        slot_grace_minutes: Optional[Dict[str, int]] = None,
        medication_overrides: Optional[Dict[str, int]] = None,
        medication_type_rules: Optional[Dict[str, int]] = None,
        weekend_multiplier: Optional[float] = None,
        holiday_multiplier: Optional[float] = None,
        db: Optional[Session] = None
    ) -> Dict:
        """
        Create or replace grace settings for a patient

        Fields left as None keep their stored value.
        """
        if default_grace_minutes is not None:
            _validate_minutes(default_grace_minutes, "default_grace_minutes")

        validated_slots = None
        if slot_grace_minutes is not None:
            validated_slots = {}
            for key, minutes in slot_grace_minutes.items():
                try:
                    slot = TimeSlot(key)
                except ValueError:
                    raise ValidationError(f"Unknown time slot: {key}")
                validated_slots[slot.value] = _validate_minutes(minutes, f"{slot.value} grace")

        validated_overrides = None
        if medication_overrides is not None:
            validated_overrides = {
                str(med_id): _validate_minutes(minutes, f"override for medication {med_id}")
                for med_id, minutes in medication_overrides.items()
            }

        validated_types = None
        if medication_type_rules is not None:
            validated_types = {}
            for key, minutes in medication_type_rules.items():
                try:
                    medication_type = MedicationType(key)
                except ValueError:
                    raise ValidationError(f"Unknown medication type: {key}")
                validated_types[medication_type.value] = _validate_minutes(
                    minutes, f"{medication_type.value} grace"
                )

        if weekend_multiplier is not None:
            weekend_multiplier = _validate_multiplier(weekend_multiplier, "weekend_multiplier")
        if holiday_multiplier is not None:
            holiday_multiplier = _validate_multiplier(holiday_multiplier, "holiday_multiplier")

        def _upsert(session: Session) -> Dict:
            check_capability(session, actor_id, patient_id, Capability.CAN_VIEW, Capability.CAN_EDIT)

            if not session.get(models.UserProfile, patient_id):
                raise NotFoundError("Patient not found")

            if validated_overrides:
                owned = {
                    str(med_id) for (med_id,) in session.query(models.Medication.id).filter(
                        models.Medication.patient_id == patient_id
                    ).all()
                }
                foreign = sorted(set(validated_overrides) - owned)
                if foreign:
                    raise ValidationError(
                        f"Unknown medication ids for this patient: {', '.join(foreign)}"
                    )

            config = session.get(models.GracePeriodConfig, patient_id)
            if not config:
                config = models.GracePeriodConfig(
                    patient_id=patient_id,
                    slot_grace_minutes={},
                    medication_overrides={},
                    medication_type_rules={}
                )
                session.add(config)

            if default_grace_minutes is not None:
                config.default_grace_minutes = default_grace_minutes
            if validated_slots is not None:
                config.slot_grace_minutes = validated_slots
            if validated_overrides is not None:
                config.medication_overrides = validated_overrides
            if validated_types is not None:
                config.medication_type_rules = validated_types
            if weekend_multiplier is not None:
                config.weekend_multiplier = weekend_multiplier
            if holiday_multiplier is not None:
                config.holiday_multiplier = holiday_multiplier
            config.updated_by = actor_id
            config.updated_at = datetime.utcnow()

            session.commit()
            session.refresh(config)

            logger.info(f"Updated grace period config for patient {patient_id}")
            return self._serialize(patient_id, config)

        if db:
            return _upsert(db)

        with get_db_context() as session:
            return _upsert(session)


# Singleton instance
grace_period_service = GracePeriodService()
