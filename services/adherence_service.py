"""
Adherence Service
Read-only adherence rollups over dose events
"""

import logging
from typing import Dict, List, Optional, Any, Iterable
from datetime import datetime, date, timedelta
from collections import defaultdict
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import and_, or_

from config import engine_config
from database import get_db_context
import models
from models import Capability, DoseStatus
from services.access_service import check_capability
from services.time_utils import to_naive_utc, utc_to_local


logger = logging.getLogger(__name__)


ADHERENT_STATUSES = (DoseStatus.TAKEN, DoseStatus.LATE)


def _rate(count: int, total: int) -> float:
    return round(count / total, 4) if total else 0.0


def calculate_metrics(events: Iterable[models.DoseEvent]) -> Dict[str, Any]:
    """
    Adherence metrics over an already-filtered set of events

    Rates are fractions in [0, 1]; an empty set yields zeros.
    """
    events = list(events)
    total = len(events)

    taken = sum(1 for e in events if e.status == DoseStatus.TAKEN)
    late = sum(1 for e in events if e.status == DoseStatus.LATE)
    missed = sum(1 for e in events if e.status == DoseStatus.MISSED)
    skipped = sum(1 for e in events if e.status == DoseStatus.SKIPPED)
    pending = sum(1 for e in events if e.status == DoseStatus.SCHEDULED)
    on_time = sum(1 for e in events if e.status in ADHERENT_STATUSES and e.is_on_time)

    late_minutes = [
        e.minutes_late for e in events
        if e.status in ADHERENT_STATUSES and e.minutes_late is not None
    ]
    avg_minutes_late = sum(late_minutes) / len(late_minutes) if late_minutes else 0.0

    return {
        "total_doses": total,
        "taken": taken,
        "late": late,
        "missed": missed,
        "skipped": skipped,
        "pending": pending,
        "on_time": on_time,
        "adherence_rate": _rate(taken + late, total),
        "on_time_rate": _rate(on_time, total),
        "missed_rate": _rate(missed, total),
        "skipped_rate": _rate(skipped, total),
        "average_minutes_late": round(avg_minutes_late, 1),
    }


def calculate_streaks(daily: Dict[date, List[models.DoseEvent]]) -> Dict[str, Any]:
    """
    Current and best runs of days on which every dose was taken.

    Days without any doses neither extend nor break a run.
    """
    current_streak = 0
    best_streak = 0
    run = 0
    run_start = None
    streak_start = None
    still_current = True

    for day in sorted(daily, reverse=True):
        perfect = all(e.status in ADHERENT_STATUSES for e in daily[day])
        if perfect:
            run += 1
            run_start = day
            best_streak = max(best_streak, run)
            if still_current:
                current_streak = run
                streak_start = run_start
        else:
            run = 0
            still_current = False

    return {
        "current_streak": current_streak,
        "best_streak": best_streak,
        "streak_start": streak_start.isoformat() if streak_start else None,
    }


class AdherenceService:
    """
    Service for adherence tracking and analysis
    """

    def _load_events(
        self,
        session: Session,
        patient_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        medication_id: Optional[int] = None
    ) -> List[models.DoseEvent]:
        """Events in [start, end) minus cancelled ones and scheduled ones not yet due"""
        query = session.query(models.DoseEvent).options(
            joinedload(models.DoseEvent.medication)
        ).filter(
            and_(
                models.DoseEvent.patient_id == patient_id,
                models.DoseEvent.scheduled_at >= start,
                models.DoseEvent.scheduled_at < end,
                models.DoseEvent.status != DoseStatus.CANCELLED,
                or_(
                    models.DoseEvent.status != DoseStatus.SCHEDULED,
                    models.DoseEvent.scheduled_at <= now
                )
            )
        )
        if medication_id is not None:
            query = query.filter(models.DoseEvent.medication_id == medication_id)
        return query.order_by(models.DoseEvent.scheduled_at).all()

    async def get_adherence_summary(
        self,
        patient_id: str,
        actor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        days: int = 30,
        medication_id: Optional[int] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Calculate adherence for a patient over a window

        Args:
            patient_id: Patient ID
            actor_id: Caller (needs can_view)
            start: Window start, defaults to end - days
            end: Window end (exclusive), defaults to now
            days: Window length when start is omitted
            medication_id: Optional specific medication
            now: Clock override
            db: Database session

        Returns:
            Overall metrics, per-medication rollups, daily breakdown and streaks
        """
        now = now or datetime.utcnow()
        end = to_naive_utc(end) if end else now
        start = to_naive_utc(start) if start else end - timedelta(days=days)

        def _calculate(session: Session) -> Dict[str, Any]:
            check_capability(session, actor_id, patient_id, Capability.CAN_VIEW)

            patient = session.get(models.UserProfile, patient_id)
            tz_name = patient.timezone if patient else "UTC"

            events = self._load_events(session, patient_id, start, end, now, medication_id)

            by_medication: Dict[int, List[models.DoseEvent]] = defaultdict(list)
            daily: Dict[date, List[models.DoseEvent]] = defaultdict(list)
            for event in events:
                by_medication[event.medication_id].append(event)
                daily[utc_to_local(event.scheduled_at, tz_name).date()].append(event)

            medications = []
            for med_id, med_events in by_medication.items():
                metrics = calculate_metrics(med_events)
                medication = med_events[0].medication
                medications.append({
                    "medication_id": med_id,
                    "medication_name": medication.name if medication else None,
                    **metrics,
                    "is_poor_adherence": (
                        metrics["total_doses"] > 0
                        and metrics["adherence_rate"] < engine_config.POOR_ADHERENCE_THRESHOLD
                    ),
                })
            medications.sort(key=lambda m: m["adherence_rate"])

            daily_breakdown = []
            for day in sorted(daily):
                metrics = calculate_metrics(daily[day])
                daily_breakdown.append({
                    "date": day.isoformat(),
                    "total_doses": metrics["total_doses"],
                    "taken": metrics["taken"] + metrics["late"],
                    "missed": metrics["missed"],
                    "skipped": metrics["skipped"],
                    "adherence_rate": metrics["adherence_rate"],
                })

            overall = calculate_metrics(events)
            return {
                "patient_id": patient_id,
                "start": start,
                "end": end,
                **overall,
                "is_poor_adherence": (
                    overall["total_doses"] > 0
                    and overall["adherence_rate"] < engine_config.POOR_ADHERENCE_THRESHOLD
                ),
                "medications": medications,
                "daily": daily_breakdown,
                **calculate_streaks(daily),
            }

        if db:
            return _calculate(db)

        with get_db_context() as session:
            return _calculate(session)


# Singleton instance
adherence_service = AdherenceService()
