"""
Time Bucket Service
Groups a patient's doses for the day into overdue / now / due soon / slot buckets
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional
from datetime import datetime, time, timedelta
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import and_

from config import engine_config
from database import get_db_context
import models
from models import Capability, DoseStatus, TimeSlot
from services.access_service import check_capability
from services.preferences_service import SlotMap, preferences_service, slot_for_time
from services.time_utils import format_hhmm, local_to_utc, utc_to_local


logger = logging.getLogger(__name__)


BUCKET_NAMES = ["overdue", "now", "due_soon", "morning", "noon", "evening", "bedtime", "completed"]


@dataclass
class BucketedEvent:
    event: models.DoseEvent
    medication_name: Optional[str]
    minutes_until_due: int
    local_time: str


def classify_event(
    event: models.DoseEvent,
    now: datetime,
    time_slots: SlotMap,
    tz_name: Optional[str]
) -> str:
    """Bucket name for a single event"""
    if event.status != DoseStatus.SCHEDULED:
        return "completed"

    minutes_until_due = (event.scheduled_at - now).total_seconds() / 60
    if minutes_until_due < 0:
        return "overdue"
    if minutes_until_due <= engine_config.BUCKET_NOW_MINUTES:
        return "now"
    if minutes_until_due <= engine_config.BUCKET_DUE_SOON_MINUTES:
        return "due_soon"

    local_hhmm = format_hhmm(utc_to_local(event.scheduled_at, tz_name).time())
    slot = slot_for_time(time_slots, local_hhmm)
    return (slot or TimeSlot.BEDTIME).value


class TimeBucketService:
    """
    Service for the "today" view of a patient's doses
    """

    async def get_today_buckets(
        self,
        patient_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> Dict:
        """
        Classify the patient's events for their current local day

        Returns:
            Dict with the local date, each bucket's events and summary counts
        """
        now = now or datetime.utcnow()

        def _buckets(session: Session) -> Dict:
            check_capability(session, actor_id, patient_id, Capability.CAN_VIEW)

            patient = session.get(models.UserProfile, patient_id)
            tz_name = patient.timezone if patient else "UTC"
            today = utc_to_local(now, tz_name).date()
            day_start = local_to_utc(today, time(0, 0), tz_name)
            day_end = local_to_utc(today + timedelta(days=1), time(0, 0), tz_name)

            time_slots = preferences_service.load_time_slots(session, patient_id)

            events = session.query(models.DoseEvent).options(
                joinedload(models.DoseEvent.medication)
            ).filter(
                and_(
                    models.DoseEvent.patient_id == patient_id,
                    models.DoseEvent.scheduled_at >= day_start,
                    models.DoseEvent.scheduled_at < day_end,
                    models.DoseEvent.status != DoseStatus.CANCELLED
                )
            ).order_by(models.DoseEvent.scheduled_at).all()

            buckets: Dict[str, List[BucketedEvent]] = {name: [] for name in BUCKET_NAMES}
            for event in events:
                buckets[classify_event(event, now, time_slots, tz_name)].append(BucketedEvent(
                    event=event,
                    medication_name=event.medication.name if event.medication else None,
                    minutes_until_due=round((event.scheduled_at - now).total_seconds() / 60),
                    local_time=format_hhmm(utc_to_local(event.scheduled_at, tz_name).time()),
                ))

            pending = sum(len(items) for name, items in buckets.items() if name != "completed")
            summary = {
                "total": len(events),
                "pending": pending,
                "overdue": len(buckets["overdue"]),
                "due_now": len(buckets["now"]),
                "due_soon": len(buckets["due_soon"]),
                "completed": len(buckets["completed"]),
                "taken": sum(1 for b in buckets["completed"] if b.event.status in (DoseStatus.TAKEN, DoseStatus.LATE)),
                "missed": sum(1 for b in buckets["completed"] if b.event.status == DoseStatus.MISSED),
                "skipped": sum(1 for b in buckets["completed"] if b.event.status == DoseStatus.SKIPPED),
            }

            return {
                "patient_id": patient_id,
                "date": today.isoformat(),
                "timezone": tz_name,
                "buckets": buckets,
                "summary": summary,
            }

        if db:
            return _buckets(db)

        with get_db_context() as session:
            return _buckets(session)


# Singleton instance
time_bucket_service = TimeBucketService()
