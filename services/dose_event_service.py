"""
Dose Event Service
Lifecycle of individual dose events: take, snooze, skip, reschedule, miss
"""

import logging
from typing import Dict, List, Optional, Any
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError

from config import engine_config
from database import get_db_context
from exceptions import ConflictError, NotFoundError, ValidationError
import models
from models import Capability, DoseStatus, TERMINAL_DOSE_STATUSES
from services.access_service import check_capability
from services.schedule_service import cancel_stale_events, expand_schedule, normalize_times
from services.time_utils import format_hhmm, to_naive_utc, utc_to_local


logger = logging.getLogger(__name__)


SYSTEM_ACTOR = "system"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _append(history: Optional[List[Dict]], entry: Dict) -> List[Dict]:
    return [*(history or []), entry]


def compare_and_set(
    session: Session,
    event: models.DoseEvent,
    expected_status: DoseStatus,
    values: Dict[str, Any],
    now: datetime
) -> bool:
    """
    Conditionally write an event.

    The UPDATE only matches while the row still has the status and version
    this caller read; the version is bumped on success. Returns False when
    another writer got there first. Does not commit.
    """
    rows = session.query(models.DoseEvent).filter(
        and_(
            models.DoseEvent.id == event.id,
            models.DoseEvent.status == expected_status,
            models.DoseEvent.version == event.version
        )
    ).update(
        {**values, "version": event.version + 1, "updated_at": now},
        synchronize_session=False
    )
    return rows == 1


def transition_to_missed(
    session: Session,
    event: models.DoseEvent,
    missed_by: str,
    now: datetime,
    grace_minutes: Optional[int] = None,
    reason: Optional[str] = None
) -> bool:
    """
    Move a scheduled event to missed and commit.

    Shared by the detector and the manual override. Returns False (after
    rolling back) when the event is no longer scheduled or was changed
    concurrently.
    """
    if event.status != DoseStatus.SCHEDULED:
        return False

    values = {
        "status": DoseStatus.MISSED,
        "missed_at": now,
        "missed_by": missed_by,
        "grace_minutes_applied": grace_minutes,
        "status_history": _append(event.status_history, {
            "from": DoseStatus.SCHEDULED.value,
            "to": DoseStatus.MISSED.value,
            "at": _iso(now),
            "by": missed_by,
            "reason": reason or "grace_period_expired",
        }),
    }
    if not compare_and_set(session, event, DoseStatus.SCHEDULED, values, now):
        session.rollback()
        return False

    session.commit()
    return True


class DoseEventService:
    """
    Service for dose event state transitions and queries
    """

    def _load(self, session: Session, event_id: int) -> models.DoseEvent:
        event = session.get(models.DoseEvent, event_id)
        if not event:
            raise NotFoundError(f"Dose event {event_id} not found")
        return event

    def _load_for_action(self, session: Session, event_id: int, actor_id: str) -> models.DoseEvent:
        event = self._load(session, event_id)
        check_capability(session, actor_id, event.patient_id, Capability.CAN_VIEW, Capability.CAN_EDIT)
        if event.status != DoseStatus.SCHEDULED:
            raise ConflictError(
                f"Dose event is already {event.status.value}",
                details={"status": event.status.value}
            )
        return event

    def _write(
        self,
        session: Session,
        event: models.DoseEvent,
        expected_status: DoseStatus,
        values: Dict[str, Any],
        now: datetime
    ) -> models.DoseEvent:
        """Compare-and-set, commit and reload; a lost race or key collision is a conflict"""
        event_id = event.id
        try:
            applied = compare_and_set(session, event, expected_status, values, now)
        except IntegrityError:
            session.rollback()
            raise ConflictError("Another dose of this medication is already scheduled at that time")

        if not applied:
            session.rollback()
            raise ConflictError("Dose event was modified by another request, please refresh")

        session.commit()
        return session.query(models.DoseEvent).filter(
            models.DoseEvent.id == event_id
        ).populate_existing().one()

    # ---------- transitions ----------

    async def mark_taken(
        self,
        event_id: int,
        actor_id: str,
        taken_at: Optional[datetime] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.DoseEvent:
        """
        Record a dose as taken

        Args:
            event_id: Dose event
            actor_id: Caller (patient or family member with can_edit)
            taken_at: When it was taken; missing or future values mean now
            notes: Free text
            now: Clock override
            db: Database session

        Returns:
            Updated DoseEvent
        """
        now = now or datetime.utcnow()
        if isinstance(taken_at, datetime):
            taken_at = to_naive_utc(taken_at)
            if taken_at > now:
                taken_at = now
        else:
            taken_at = now

        def _take(session: Session) -> models.DoseEvent:
            event = self._load_for_action(session, event_id, actor_id)

            diff_minutes = (taken_at - event.scheduled_at).total_seconds() / 60
            is_on_time = abs(diff_minutes) <= engine_config.ON_TIME_WINDOW_MINUTES
            minutes_late = round(diff_minutes) if not is_on_time and diff_minutes > 0 else None
            was_late = minutes_late is not None and minutes_late > engine_config.LATE_FLAG_MINUTES

            updated = self._write(session, event, DoseStatus.SCHEDULED, {
                "status": DoseStatus.TAKEN,
                "taken_at": taken_at,
                "taken_by": actor_id,
                "is_on_time": is_on_time,
                "minutes_late": minutes_late,
                "was_late": was_late,
                "notes": notes,
                "status_history": _append(event.status_history, {
                    "from": DoseStatus.SCHEDULED.value,
                    "to": DoseStatus.TAKEN.value,
                    "at": _iso(now),
                    "by": actor_id,
                }),
            }, now)

            logger.info(
                f"Dose event {event_id} taken by {actor_id} "
                f"({'on time' if is_on_time else f'{minutes_late or 0} min late'})"
            )
            return updated

        if db:
            return _take(db)

        with get_db_context() as session:
            return _take(session)

    async def snooze(
        self,
        event_id: int,
        actor_id: str,
        minutes: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.DoseEvent:
        """Push a scheduled dose back by 1-480 minutes"""
        now = now or datetime.utcnow()
        if (
            isinstance(minutes, bool)
            or not isinstance(minutes, int)
            or minutes < engine_config.SNOOZE_MIN_MINUTES
            or minutes > engine_config.SNOOZE_MAX_MINUTES
        ):
            raise ValidationError(
                f"Snooze minutes must be between {engine_config.SNOOZE_MIN_MINUTES} "
                f"and {engine_config.SNOOZE_MAX_MINUTES}"
            )

        def _snooze(session: Session) -> models.DoseEvent:
            event = self._load_for_action(session, event_id, actor_id)
            new_time = event.scheduled_at + timedelta(minutes=minutes)

            return self._write(session, event, DoseStatus.SCHEDULED, {
                "scheduled_at": new_time,
                "snooze_count": (event.snooze_count or 0) + 1,
                "snooze_history": _append(event.snooze_history, {
                    "snoozed_at": _iso(now),
                    "snooze_minutes": minutes,
                    "from": _iso(event.scheduled_at),
                    "to": _iso(new_time),
                    "reason": reason,
                    "by": actor_id,
                }),
            }, now)

        if db:
            return _snooze(db)

        with get_db_context() as session:
            return _snooze(session)

    async def skip(
        self,
        event_id: int,
        actor_id: str,
        reason: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.DoseEvent:
        now = now or datetime.utcnow()
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to skip a dose")

        def _skip(session: Session) -> models.DoseEvent:
            event = self._load_for_action(session, event_id, actor_id)

            return self._write(session, event, DoseStatus.SCHEDULED, {
                "status": DoseStatus.SKIPPED,
                "notes": notes if notes is not None else event.notes,
                "skip_history": _append(event.skip_history, {
                    "skipped_at": _iso(now),
                    "reason": reason.strip(),
                    "notes": notes,
                    "by": actor_id,
                }),
                "status_history": _append(event.status_history, {
                    "from": DoseStatus.SCHEDULED.value,
                    "to": DoseStatus.SKIPPED.value,
                    "at": _iso(now),
                    "by": actor_id,
                    "reason": reason.strip(),
                }),
            }, now)

        if db:
            return _skip(db)

        with get_db_context() as session:
            return _skip(session)

    async def reschedule(
        self,
        event_id: int,
        actor_id: str,
        new_date_time: datetime,
        reason: str,
        is_one_time: bool = True,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.DoseEvent:
        """
        Move a scheduled dose to a new instant

        With is_one_time False the owning schedule's matching time of day is
        replaced too. Future doses still at the old time are cancelled and
        the horizon is refilled at the new one.
        """
        now = now or datetime.utcnow()
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reschedule a dose")
        if not isinstance(new_date_time, datetime):
            raise ValidationError("new_date_time must be a datetime")
        new_time = to_naive_utc(new_date_time)
        if new_time <= now:
            raise ValidationError("Cannot reschedule to a time in the past")

        def _reschedule(session: Session) -> models.DoseEvent:
            event = self._load_for_action(session, event_id, actor_id)

            retimed = None
            if not is_one_time:
                retimed = self._retime_schedule(session, event, new_time, now)
                if retimed is not None:
                    cancel_stale_events(session, retimed, actor_id, now, exclude_event_id=event.id)

            updated = self._write(session, event, DoseStatus.SCHEDULED, {
                "scheduled_at": new_time,
                "reschedule_history": _append(event.reschedule_history, {
                    "rescheduled_at": _iso(now),
                    "from": _iso(event.scheduled_at),
                    "to": _iso(new_time),
                    "reason": reason.strip(),
                    "is_one_time": is_one_time,
                    "by": actor_id,
                }),
            }, now)

            if retimed is None:
                return updated

            schedule = session.get(models.MedicationSchedule, updated.schedule_id)
            expand_schedule(session, schedule, now=now)
            return session.query(models.DoseEvent).filter(
                models.DoseEvent.id == event_id
            ).populate_existing().one()

        if db:
            return _reschedule(db)

        with get_db_context() as session:
            return _reschedule(session)

    def _retime_schedule(
        self,
        session: Session,
        event: models.DoseEvent,
        new_time: datetime,
        now: datetime
    ) -> Optional[models.MedicationSchedule]:
        """Swap the event's local time of day in its schedule; returns the schedule when changed"""
        schedule = session.get(models.MedicationSchedule, event.schedule_id)
        if not schedule:
            return None

        patient = session.get(models.UserProfile, event.patient_id)
        tz_name = patient.timezone if patient else "UTC"
        old_hhmm = format_hhmm(utc_to_local(event.original_scheduled_at, tz_name).time())
        new_hhmm = format_hhmm(utc_to_local(new_time, tz_name).time())

        times = list(schedule.times_of_day or [])
        if old_hhmm not in times or new_hhmm in times:
            logger.info(
                f"Schedule {schedule.id} not retimed: {old_hhmm} -> {new_hhmm} does not map onto {times}"
            )
            return None

        times[times.index(old_hhmm)] = new_hhmm
        schedule.times_of_day = normalize_times(times)
        schedule.updated_at = now
        logger.info(f"Schedule {schedule.id} time {old_hhmm} replaced with {new_hhmm}")
        return schedule

    async def mark_missed(
        self,
        event_id: int,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.DoseEvent:
        """Manually mark a scheduled dose as missed"""
        now = now or datetime.utcnow()
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to mark a dose as missed")

        def _miss(session: Session) -> models.DoseEvent:
            event = self._load_for_action(session, event_id, actor_id)

            if not transition_to_missed(session, event, actor_id, now, reason=reason.strip()):
                raise ConflictError("Dose event was modified by another request, please refresh")

            return session.query(models.DoseEvent).filter(
                models.DoseEvent.id == event_id
            ).populate_existing().one()

        if db:
            return _miss(db)

        with get_db_context() as session:
            return _miss(session)

    async def correct_status(
        self,
        event_id: int,
        actor_id: str,
        new_status: DoseStatus,
        reason: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> models.DoseEvent:
        """
        Manually correct the status of an already-resolved dose

        This is the only path between terminal statuses.
        """
        now = now or datetime.utcnow()
        try:
            new_status = DoseStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown status: {new_status}")
        if new_status in (DoseStatus.SCHEDULED, DoseStatus.CANCELLED):
            raise ValidationError(f"Cannot correct a dose to {new_status.value}")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to correct a dose status")

        def _correct(session: Session) -> models.DoseEvent:
            event = self._load(session, event_id)
            check_capability(session, actor_id, event.patient_id, Capability.CAN_VIEW, Capability.CAN_EDIT)

            if event.status not in TERMINAL_DOSE_STATUSES or event.status == DoseStatus.CANCELLED:
                raise ConflictError(f"Cannot correct a dose that is {event.status.value}")
            if event.status == new_status:
                raise ConflictError(f"Dose event is already {new_status.value}")

            values: Dict[str, Any] = {
                "status": new_status,
                "status_history": _append(event.status_history, {
                    "from": event.status.value,
                    "to": new_status.value,
                    "at": _iso(now),
                    "by": actor_id,
                    "reason": reason.strip(),
                    "correction": True,
                }),
            }
            if new_status in (DoseStatus.TAKEN, DoseStatus.LATE):
                values["taken_at"] = event.taken_at or now
                values["taken_by"] = event.taken_by or actor_id
            if new_status == DoseStatus.MISSED:
                values["missed_at"] = now
                values["missed_by"] = actor_id

            return self._write(session, event, event.status, values, now)

        if db:
            return _correct(db)

        with get_db_context() as session:
            return _correct(session)

    # ---------- queries ----------

    async def get_event(
        self,
        event_id: int,
        actor_id: str,
        db: Optional[Session] = None
    ) -> models.DoseEvent:
        def _get(session: Session) -> models.DoseEvent:
            event = self._load(session, event_id)
            check_capability(session, actor_id, event.patient_id, Capability.CAN_VIEW)
            return event

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def list_events(
        self,
        patient_id: str,
        actor_id: str,
        start: datetime,
        end: datetime,
        status: Optional[str] = None,
        medication_id: Optional[int] = None,
        db: Optional[Session] = None
    ) -> List[models.DoseEvent]:
        """
        Events for a patient with scheduled_at in [start, end), oldest first

        An unknown status filter yields an empty list rather than an error.
        """
        def _list(session: Session) -> List[models.DoseEvent]:
            check_capability(session, actor_id, patient_id, Capability.CAN_VIEW)

            query = session.query(models.DoseEvent).filter(
                and_(
                    models.DoseEvent.patient_id == patient_id,
                    models.DoseEvent.scheduled_at >= to_naive_utc(start),
                    models.DoseEvent.scheduled_at < to_naive_utc(end)
                )
            )

            if status:
                try:
                    query = query.filter(models.DoseEvent.status == DoseStatus(status))
                except ValueError:
                    logger.warning(f"Ignoring dose event query with unknown status {status!r}")
                    return []

            if medication_id is not None:
                query = query.filter(models.DoseEvent.medication_id == medication_id)

            return query.order_by(models.DoseEvent.scheduled_at).all()

        if db:
            return _list(db)

        with get_db_context() as session:
            return _list(session)


# Singleton instance
dose_event_service = DoseEventService()
