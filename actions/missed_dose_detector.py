"""
Missed Dose Detector
Sweeps scheduled dose events whose grace period has expired and marks them missed
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from config import settings
from database import get_db_context
import models
from models import Capability, DoseStatus
from services.access_service import check_capability
from services.dose_event_service import SYSTEM_ACTOR, transition_to_missed
from services.grace_period_service import classify_medication, resolve_grace
from services.preferences_service import preferences_service
from services.schedule_service import schedule_service


logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Outcome of one detection run"""
    processed: int = 0
    missed: int = 0
    within_grace: int = 0
    skipped_by_race: int = 0
    patients_processed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    deferred_patients: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    started_at: datetime = field(default_factory=datetime.utcnow)

    def merge(self, other: "DetectionResult") -> None:
        self.processed += other.processed
        self.missed += other.missed
        self.within_grace += other.within_grace
        self.skipped_by_race += other.skipped_by_race

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "missed": self.missed,
            "within_grace": self.within_grace,
            "skipped_by_race": self.skipped_by_race,
            "patients_processed": self.patients_processed,
            "errors": self.errors,
            "deferred_patients": self.deferred_patients,
            "duration_seconds": round(self.duration_seconds, 3),
            "started_at": self.started_at.isoformat(),
        }


class MissedDoseDetector:
    """
    Detects doses that were never acted on

    An event is missed once scheduled_at + grace < now while it is still
    scheduled. The write is a compare-and-set, so a dose taken concurrently
    stays taken.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock

    def _process_patient(
        self,
        session: Session,
        patient_id: str,
        events: List[models.DoseEvent],
        now: datetime
    ) -> DetectionResult:
        result = DetectionResult()

        patient = session.get(models.UserProfile, patient_id)
        tz_name = patient.timezone if patient else "UTC"
        config = session.get(models.GracePeriodConfig, patient_id)
        time_slots = preferences_service.load_time_slots(session, patient_id)
        medication_types = {}

        for event in events:
            result.processed += 1
            if event.medication_id not in medication_types:
                medication_types[event.medication_id] = classify_medication(
                    session.get(models.Medication, event.medication_id)
                )
            grace = resolve_grace(
                config, event.medication_id, event.scheduled_at, time_slots, tz_name,
                medication_types[event.medication_id]
            )

            if event.scheduled_at + timedelta(minutes=grace.minutes) >= now:
                result.within_grace += 1
                continue

            if transition_to_missed(session, event, SYSTEM_ACTOR, now, grace_minutes=grace.minutes):
                result.missed += 1
                logger.info(
                    f"Dose event {event.id} for patient {patient_id} marked missed "
                    f"({grace.minutes} min grace: {', '.join(grace.applied_rules)})"
                )
            else:
                result.skipped_by_race += 1
                logger.info(f"Dose event {event.id} changed during sweep; left as is")

        return result

    def _sweep(
        self,
        session: Session,
        now: datetime,
        patient_id: Optional[str],
        budget_seconds: Optional[float],
        batch_limit: int
    ) -> DetectionResult:
        started = self._clock()
        result = DetectionResult(started_at=now)

        query = session.query(models.DoseEvent).filter(
            and_(
                models.DoseEvent.status == DoseStatus.SCHEDULED,
                models.DoseEvent.scheduled_at < now
            )
        )
        if patient_id is not None:
            query = query.filter(models.DoseEvent.patient_id == patient_id)
        candidates = query.order_by(models.DoseEvent.scheduled_at).limit(batch_limit).all()

        by_patient: Dict[str, List[models.DoseEvent]] = OrderedDict()
        for event in candidates:
            by_patient.setdefault(event.patient_id, []).append(event)

        patient_ids = list(by_patient)
        for index, current_patient in enumerate(patient_ids):
            if budget_seconds is not None and self._clock() - started >= budget_seconds:
                result.deferred_patients = patient_ids[index:]
                logger.warning(
                    f"Sweep budget of {budget_seconds}s exhausted; "
                    f"{len(result.deferred_patients)} patients deferred to the next run"
                )
                break

            try:
                result.merge(self._process_patient(session, current_patient, by_patient[current_patient], now))
                result.patients_processed += 1
            except Exception as e:
                session.rollback()
                logger.exception(f"Missed dose detection failed for patient {current_patient}")
                result.errors.append({"patient_id": current_patient, "error": str(e)})

        result.duration_seconds = self._clock() - started
        return result

    async def detect_missed_doses(
        self,
        now: Optional[datetime] = None,
        budget_seconds: Optional[float] = None,
        batch_limit: Optional[int] = None,
        db: Optional[Session] = None
    ) -> DetectionResult:
        """
        Sweep all patients

        Args:
            now: Clock override
            budget_seconds: Wall-clock budget, defaults to the configured one
            batch_limit: Maximum candidate events per run
            db: Database session

        Returns:
            DetectionResult summary
        """
        now = now or datetime.utcnow()
        budget = settings.MISSED_DETECTION_SWEEP_BUDGET_SECONDS if budget_seconds is None else budget_seconds
        limit = batch_limit or settings.MISSED_DETECTION_BATCH_LIMIT

        def _detect(session: Session) -> DetectionResult:
            result = self._sweep(session, now, None, budget, limit)
            logger.info(
                f"Missed dose sweep: processed={result.processed} missed={result.missed} "
                f"races={result.skipped_by_race} errors={len(result.errors)} "
                f"deferred={len(result.deferred_patients)} in {result.duration_seconds:.2f}s"
            )
            return result

        if db:
            return _detect(db)

        with get_db_context() as session:
            return _detect(session)

    async def run_for_patient(
        self,
        patient_id: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        db: Optional[Session] = None
    ) -> DetectionResult:
        """On-demand detection for one patient; callers other than the system need can_edit"""
        now = now or datetime.utcnow()

        def _detect(session: Session) -> DetectionResult:
            if actor_id is not None:
                check_capability(session, actor_id, patient_id, Capability.CAN_VIEW, Capability.CAN_EDIT)
            return self._sweep(session, now, patient_id, None, settings.MISSED_DETECTION_BATCH_LIMIT)

        if db:
            return _detect(db)

        with get_db_context() as session:
            return _detect(session)


class MissedDoseMonitor:
    """
    Background task running the detector and the horizon top-up on an interval
    """

    def __init__(
        self,
        detector: Optional[MissedDoseDetector] = None,
        interval_minutes: Optional[int] = None,
        enabled: Optional[bool] = None
    ):
        self.detector = detector or missed_dose_detector
        self.interval_seconds = (interval_minutes or settings.MISSED_DETECTION_INTERVAL_MINUTES) * 60
        self.enabled = settings.MISSED_DETECTION_ENABLED if enabled is None else enabled
        self._task: Optional[asyncio.Task] = None
        self.last_result: Optional[DetectionResult] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.enabled:
            logger.info("Missed dose monitor disabled")
            return
        if self.is_running:
            logger.warning("Missed dose monitor already running")
            return

        self._task = asyncio.create_task(self._loop())
        logger.info(f"Missed dose monitor started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

        self._task = None
        logger.info("Missed dose monitor stopped")

    async def run_once(self, now: Optional[datetime] = None) -> DetectionResult:
        """One cycle: top up expansion horizons, then sweep"""
        await schedule_service.expand_all_active_schedules(now=now)
        self.last_result = await self.detector.detect_missed_doses(now=now)
        return self.last_result

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("Missed dose monitor cycle failed")
        except asyncio.CancelledError:
            logger.debug("Missed dose monitor loop cancelled")
            raise


# Singleton instances
missed_dose_detector = MissedDoseDetector()
missed_dose_monitor = MissedDoseMonitor()
