"""
Schedule Service
Medication schedule management and expansion into dose events
"""

import calendar
import logging
from typing import Dict, List, Optional, Any, Iterable
from datetime import datetime, date, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError

from config import settings
from database import get_db_context
from exceptions import NotFoundError, ValidationError
import models
from models import Capability, DoseStatus, Frequency, DAILY_DOSE_COUNTS
from services.access_service import check_capability
from services.time_utils import format_hhmm, local_to_utc, parse_hhmm, to_naive_utc, utc_to_local


logger = logging.getLogger(__name__)


# ==================== RULE VALIDATION ====================

def normalize_times(times_of_day: Optional[Iterable[str]]) -> List[str]:
    """Parse, normalize and sort "HH:MM" strings, rejecting duplicates"""
    normalized = []
    for value in times_of_day or []:
        try:
            normalized.append(format_hhmm(parse_hhmm(value)))
        except ValueError as e:
            raise ValidationError(str(e))
    if len(set(normalized)) != len(normalized):
        raise ValidationError("times_of_day contains duplicate entries")
    return sorted(normalized)


def validate_rule(
    frequency: Frequency,
    times_of_day: Optional[Iterable[str]],
    days_of_week: Optional[Iterable[int]] = None,
    day_of_month: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None
) -> Dict[str, Any]:
    """
    Check that a recurrence rule is internally consistent.

    Returns the normalized rule fields.
    """
    try:
        frequency = Frequency(frequency)
    except ValueError:
        raise ValidationError(f"Unknown frequency: {frequency}")

    times = normalize_times(times_of_day)
    days = sorted(set(days_of_week or []))

    if frequency in DAILY_DOSE_COUNTS:
        required = DAILY_DOSE_COUNTS[frequency]
        if len(times) != required:
            raise ValidationError(
                f"{frequency.value} requires exactly {required} time(s) of day, got {len(times)}"
            )
        days = []
        day_of_month = None
    elif frequency == Frequency.WEEKLY:
        if not times:
            raise ValidationError("weekly schedules require at least one time of day")
        if not days:
            raise ValidationError("weekly schedules require days_of_week")
        if any(not isinstance(d, int) or d < 0 or d > 6 for d in days):
            raise ValidationError("days_of_week values must be 0 (Monday) to 6 (Sunday)")
        day_of_month = None
    elif frequency == Frequency.MONTHLY:
        if not times:
            raise ValidationError("monthly schedules require at least one time of day")
        if not isinstance(day_of_month, int) or day_of_month < 1 or day_of_month > 31:
            raise ValidationError("monthly schedules require day_of_month between 1 and 31")
        days = []
    else:
        # as_needed never produces events
        days = []
        day_of_month = None

    if start_date and end_date and end_date < start_date:
        raise ValidationError("end_date cannot be before start_date")

    return {
        "frequency": frequency,
        "times_of_day": times,
        "days_of_week": days,
        "day_of_month": day_of_month,
    }


# ==================== EXPANSION ====================

def day_qualifies(schedule: models.MedicationSchedule, day: date) -> bool:
    """Whether a local calendar day carries doses for this schedule"""
    if schedule.frequency in DAILY_DOSE_COUNTS:
        return True
    if schedule.frequency == Frequency.WEEKLY:
        return day.weekday() in (schedule.days_of_week or [])
    if schedule.frequency == Frequency.MONTHLY:
        if not schedule.day_of_month:
            return False
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.day == min(schedule.day_of_month, last_day)
    return False


def is_paused(schedule: models.MedicationSchedule, now: datetime) -> bool:
    if not schedule.is_paused:
        return False
    return schedule.paused_until is None or now < schedule.paused_until


def candidate_instants(
    schedule: models.MedicationSchedule,
    tz_name: Optional[str],
    now: datetime,
    horizon_end: datetime
) -> List[datetime]:
    """
    Naive-UTC instants the schedule calls for in [now, horizon_end).

    Days are walked in the patient's timezone starting from yesterday so
    that timezones ahead of UTC do not lose their first local day.
    """
    if schedule.frequency == Frequency.AS_NEEDED:
        return []

    first_day = max(schedule.start_date, utc_to_local(now, tz_name).date() - timedelta(days=1))
    last_day = utc_to_local(horizon_end, tz_name).date()
    if schedule.end_date and not schedule.is_indefinite:
        last_day = min(last_day, schedule.end_date)

    times = [parse_hhmm(t) for t in schedule.times_of_day or []]
    instants = []
    day = first_day
    while day <= last_day:
        if day_qualifies(schedule, day):
            for at in times:
                instant = local_to_utc(day, at, tz_name)
                if now <= instant < horizon_end:
                    instants.append(instant)
        day += timedelta(days=1)
    return sorted(set(instants))


def _new_event(schedule: models.MedicationSchedule, instant: datetime) -> models.DoseEvent:
    return models.DoseEvent(
        schedule_id=schedule.id,
        medication_id=schedule.medication_id,
        patient_id=schedule.patient_id,
        scheduled_at=instant,
        original_scheduled_at=instant,
        status=DoseStatus.SCHEDULED,
        snooze_count=0,
        snooze_history=[],
        skip_history=[],
        reschedule_history=[],
        status_history=[],
        was_late=False,
        version=1
    )


def expand_schedule(
    session: Session,
    schedule: models.MedicationSchedule,
    horizon_end: Optional[datetime] = None,
    now: Optional[datetime] = None
) -> List[models.DoseEvent]:
    """
    Materialize dose events for a schedule up to the horizon.

    Idempotent: instants that already have an event for the same medication
    and patient are skipped, whether the event sits there now or was
    originally generated there and later moved. The unique index catches
    concurrent expanders. Past instants are never backfilled.

    Returns:
        The newly created events
    """
    now = now or datetime.utcnow()
    horizon_end = horizon_end or now + timedelta(days=settings.EXPANSION_HORIZON_DAYS)

    if not schedule.is_active or is_paused(schedule, now):
        return []
    if schedule.medication is not None and not schedule.medication.is_active:
        return []

    patient = session.get(models.UserProfile, schedule.patient_id)
    tz_name = patient.timezone if patient else "UTC"

    instants = candidate_instants(schedule, tz_name, now, horizon_end)
    if not instants:
        return []

    rows = session.query(
        models.DoseEvent.scheduled_at,
        models.DoseEvent.original_scheduled_at
    ).filter(
        and_(
            models.DoseEvent.medication_id == schedule.medication_id,
            models.DoseEvent.patient_id == schedule.patient_id,
            or_(
                models.DoseEvent.scheduled_at.between(instants[0], instants[-1]),
                models.DoseEvent.original_scheduled_at.between(instants[0], instants[-1])
            )
        )
    ).all()
    existing = {instant for row in rows for instant in row}
    missing = [instant for instant in instants if instant not in existing]
    if not missing:
        return []

    schedule_id = schedule.id
    events = [_new_event(schedule, instant) for instant in missing]
    session.add_all(events)
    try:
        session.commit()
    except IntegrityError:
        # Another expander won some of these instants; insert row by row
        session.rollback()
        logger.warning(f"Concurrent expansion detected for schedule {schedule_id}; retrying per row")
        schedule = session.get(models.MedicationSchedule, schedule_id)
        events = []
        for instant in missing:
            event = _new_event(schedule, instant)
            try:
                with session.begin_nested():
                    session.add(event)
            except IntegrityError:
                continue
            events.append(event)
        session.commit()

    logger.info(f"Expanded schedule {schedule_id}: {len(events)} new dose events")
    return events


def cancel_stale_events(
    session: Session,
    schedule: models.MedicationSchedule,
    actor_id: str,
    now: datetime,
    exclude_event_id: Optional[int] = None
) -> int:
    """
    Cancel future scheduled events the schedule's current rule no longer produces.

    Each event is judged by the local day and time it was generated for, so
    snoozed or one-off rescheduled doses stay put. Does not commit.

    Returns:
        Number of events cancelled
    """
    patient = session.get(models.UserProfile, schedule.patient_id)
    tz_name = patient.timezone if patient else "UTC"
    times = set(schedule.times_of_day or [])

    query = session.query(models.DoseEvent).filter(
        and_(
            models.DoseEvent.schedule_id == schedule.id,
            models.DoseEvent.status == DoseStatus.SCHEDULED,
            models.DoseEvent.scheduled_at > now
        )
    )
    if exclude_event_id is not None:
        query = query.filter(models.DoseEvent.id != exclude_event_id)

    cancelled = 0
    for event in query.all():
        local = utc_to_local(event.original_scheduled_at, tz_name)
        day = local.date()
        in_range = day >= schedule.start_date and (
            schedule.is_indefinite or schedule.end_date is None or day <= schedule.end_date
        )
        if in_range and day_qualifies(schedule, day) and format_hhmm(local.time()) in times:
            continue

        rows = session.query(models.DoseEvent).filter(
            and_(
                models.DoseEvent.id == event.id,
                models.DoseEvent.status == DoseStatus.SCHEDULED,
                models.DoseEvent.version == event.version
            )
        ).update(
            {
                models.DoseEvent.status: DoseStatus.CANCELLED,
                models.DoseEvent.status_history: [*(event.status_history or []), {
                    "from": DoseStatus.SCHEDULED.value,
                    "to": DoseStatus.CANCELLED.value,
                    "at": now.isoformat(),
                    "by": actor_id,
                    "reason": "schedule_changed",
                }],
                models.DoseEvent.version: event.version + 1,
                models.DoseEvent.updated_at: now,
            },
            synchronize_session=False
        )
        cancelled += rows

    if cancelled:
        logger.info(f"Cancelled {cancelled} future events no longer produced by schedule {schedule.id}")
    return cancelled


# ==================== SERVICE ====================

class ScheduleService:
    """
    Service for medication schedule management
    """

    UPDATABLE_FIELDS = {
        "frequency", "times_of_day", "days_of_week", "day_of_month",
        "end_date", "is_indefinite",
    }

    def _load(self, session: Session, schedule_id: int) -> models.MedicationSchedule:
        schedule = session.get(models.MedicationSchedule, schedule_id)
        if not schedule:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return schedule

    async def create_schedule(
        self,
        medication_id: int,
        actor_id: str,
        frequency: Frequency,
        times_of_day: Optional[List[str]] = None,
        days_of_week: Optional[List[int]] = None,
        day_of_month: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        is_indefinite: Optional[bool] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Create a medication schedule and expand it immediately

        Args:
            medication_id: Medication the schedule belongs to
            actor_id: Caller (needs can_create on the patient)
            frequency: Recurrence tier
            times_of_day: "HH:MM" local times
            days_of_week: 0=Monday..6=Sunday (weekly)
            day_of_month: 1..31 (monthly, clamped to short months)
            start_date: First local day (defaults to today)
            end_date: Last local day, None for indefinite
            is_indefinite: Defaults to end_date is None
            now: Clock override
            db: Database session

        Returns:
            Dict with the schedule and the number of events created
        """
        now = now or datetime.utcnow()

        def _create(session: Session) -> Dict[str, Any]:
            medication = session.get(models.Medication, medication_id)
            if not medication:
                raise NotFoundError(f"Medication {medication_id} not found")

            check_capability(session, actor_id, medication.patient_id, Capability.CAN_CREATE)

            if not medication.is_active:
                raise ValidationError("Cannot schedule an inactive medication")

            patient = session.get(models.UserProfile, medication.patient_id)
            tz_name = patient.timezone if patient else "UTC"
            first_day = start_date or utc_to_local(now, tz_name).date()

            rule = validate_rule(frequency, times_of_day, days_of_week, day_of_month, first_day, end_date)

            schedule = models.MedicationSchedule(
                medication_id=medication.id,
                patient_id=medication.patient_id,
                start_date=first_day,
                end_date=end_date,
                is_indefinite=end_date is None if is_indefinite is None else is_indefinite,
                is_active=True,
                is_paused=False,
                created_by=actor_id,
                **rule
            )
            session.add(schedule)
            session.commit()
            session.refresh(schedule)

            events = expand_schedule(session, schedule, now=now)

            logger.info(
                f"Created {schedule.frequency.value} schedule {schedule.id} for medication "
                f"{medication_id} ({len(events)} events)"
            )
            return {"schedule": schedule, "events_created": len(events)}

        if db:
            return _create(db)

        with get_db_context() as session:
            return _create(session)

    async def get_schedule(
        self,
        schedule_id: int,
        actor_id: str,
        db: Optional[Session] = None
    ) -> models.MedicationSchedule:
        def _get(session: Session) -> models.MedicationSchedule:
            schedule = self._load(session, schedule_id)
            check_capability(session, actor_id, schedule.patient_id, Capability.CAN_VIEW)
            return schedule

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def get_patient_schedules(
        self,
        patient_id: str,
        actor_id: str,
        medication_id: Optional[int] = None,
        active_only: bool = True,
        db: Optional[Session] = None
    ) -> List[models.MedicationSchedule]:
        """Get schedules for a patient, optionally for one medication"""
        def _get(session: Session) -> List[models.MedicationSchedule]:
            check_capability(session, actor_id, patient_id, Capability.CAN_VIEW)

            query = session.query(models.MedicationSchedule).filter(
                models.MedicationSchedule.patient_id == patient_id
            )
            if medication_id is not None:
                query = query.filter(models.MedicationSchedule.medication_id == medication_id)
            if active_only:
                query = query.filter(models.MedicationSchedule.is_active == True)

            return query.order_by(models.MedicationSchedule.id).all()

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def update_schedule(
        self,
        schedule_id: int,
        actor_id: str,
        updates: Dict[str, Any],
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Update a schedule's rule and top up its events

        Future scheduled events the new rule no longer produces are
        cancelled; everything else that already exists is left untouched.
        """
        now = now or datetime.utcnow()

        def _update(session: Session) -> Dict[str, Any]:
            schedule = self._load(session, schedule_id)
            check_capability(session, actor_id, schedule.patient_id, Capability.CAN_EDIT)

            merged = {
                "frequency": schedule.frequency,
                "times_of_day": schedule.times_of_day,
                "days_of_week": schedule.days_of_week,
                "day_of_month": schedule.day_of_month,
            }
            merged.update({k: v for k, v in updates.items() if k in merged})
            end_date = updates.get("end_date", schedule.end_date)

            rule = validate_rule(start_date=schedule.start_date, end_date=end_date, **merged)
            for field, value in rule.items():
                setattr(schedule, field, value)

            if "end_date" in updates:
                schedule.end_date = end_date
                if "is_indefinite" not in updates:
                    schedule.is_indefinite = end_date is None
            if "is_indefinite" in updates:
                schedule.is_indefinite = bool(updates["is_indefinite"])

            schedule.updated_at = now
            cancelled = cancel_stale_events(session, schedule, actor_id, now)
            session.commit()
            session.refresh(schedule)

            events = expand_schedule(session, schedule, now=now)
            return {
                "schedule": schedule,
                "events_created": len(events),
                "events_cancelled": cancelled,
            }

        if db:
            return _update(db)

        with get_db_context() as session:
            return _update(session)

    async def pause_schedule(
        self,
        schedule_id: int,
        actor_id: str,
        paused_until: Optional[datetime] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.MedicationSchedule:
        """Suspend expansion; existing events are not touched"""
        now = now or datetime.utcnow()
        if paused_until is not None:
            paused_until = to_naive_utc(paused_until)
        if paused_until is not None and paused_until <= now:
            raise ValidationError("paused_until must be in the future")

        def _pause(session: Session) -> models.MedicationSchedule:
            schedule = self._load(session, schedule_id)
            check_capability(session, actor_id, schedule.patient_id, Capability.CAN_EDIT)

            schedule.is_paused = True
            schedule.paused_until = paused_until
            schedule.updated_at = now
            session.commit()
            session.refresh(schedule)

            logger.info(f"Paused schedule {schedule_id} until {paused_until or 'resumed'}")
            return schedule

        if db:
            return _pause(db)

        with get_db_context() as session:
            return _pause(session)

    async def resume_schedule(
        self,
        schedule_id: int,
        actor_id: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()

        def _resume(session: Session) -> Dict[str, Any]:
            schedule = self._load(session, schedule_id)
            check_capability(session, actor_id, schedule.patient_id, Capability.CAN_EDIT)

            schedule.is_paused = False
            schedule.paused_until = None
            schedule.updated_at = now
            session.commit()
            session.refresh(schedule)

            events = expand_schedule(session, schedule, now=now)
            logger.info(f"Resumed schedule {schedule_id} ({len(events)} events)")
            return {"schedule": schedule, "events_created": len(events)}

        if db:
            return _resume(db)

        with get_db_context() as session:
            return _resume(session)

    async def expand_patient_schedules(
        self,
        patient_id: str,
        actor_id: Optional[str] = None,
        horizon_end: Optional[datetime] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> int:
        """Expand every active schedule of one patient; returns events created"""
        now = now or datetime.utcnow()

        def _expand(session: Session) -> int:
            if actor_id is not None:
                check_capability(session, actor_id, patient_id, Capability.CAN_VIEW, Capability.CAN_EDIT)

            schedules = session.query(models.MedicationSchedule).filter(
                and_(
                    models.MedicationSchedule.patient_id == patient_id,
                    models.MedicationSchedule.is_active == True
                )
            ).all()

            created = 0
            for schedule in schedules:
                created += len(expand_schedule(session, schedule, horizon_end=horizon_end, now=now))
            return created

        if db:
            return _expand(db)

        with get_db_context() as session:
            return _expand(session)

    async def expand_all_active_schedules(
        self,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Rolling-horizon top-up across all patients

        A failing schedule is logged and skipped so the rest still expand.
        """
        now = now or datetime.utcnow()

        def _expand_all(session: Session) -> Dict[str, Any]:
            schedule_ids = [
                row[0] for row in session.query(models.MedicationSchedule.id).filter(
                    and_(
                        models.MedicationSchedule.is_active == True,
                        models.MedicationSchedule.frequency != Frequency.AS_NEEDED
                    )
                ).all()
            ]

            summary = {"schedules": len(schedule_ids), "events_created": 0, "errors": []}
            for schedule_id in schedule_ids:
                try:
                    schedule = session.get(models.MedicationSchedule, schedule_id)
                    summary["events_created"] += len(expand_schedule(session, schedule, now=now))
                except Exception as e:
                    session.rollback()
                    logger.exception(f"Expansion failed for schedule {schedule_id}")
                    summary["errors"].append({"schedule_id": schedule_id, "error": str(e)})

            logger.info(
                f"Horizon top-up: {summary['events_created']} events across "
                f"{summary['schedules']} schedules"
            )
            return summary

        if db:
            return _expand_all(db)

        with get_db_context() as session:
            return _expand_all(session)


# Singleton instance
schedule_service = ScheduleService()
