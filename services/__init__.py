"""
Services Module
Business logic layer for the CareCircle application
"""

from services.user_service import UserService, user_service
from services.access_service import AccessService, access_service
from services.medication_service import MedicationService, medication_service
from services.schedule_service import ScheduleService, schedule_service
from services.dose_event_service import DoseEventService, dose_event_service
from services.time_bucket_service import TimeBucketService, time_bucket_service
from services.grace_period_service import GracePeriodService, grace_period_service
from services.preferences_service import PreferencesService, preferences_service
from services.adherence_service import AdherenceService, adherence_service


__all__ = [
    # Service classes
    "UserService",
    "AccessService",
    "MedicationService",
    "ScheduleService",
    "DoseEventService",
    "TimeBucketService",
    "GracePeriodService",
    "PreferencesService",
    "AdherenceService",
    # Singleton instances
    "user_service",
    "access_service",
    "medication_service",
    "schedule_service",
    "dose_event_service",
    "time_bucket_service",
    "grace_period_service",
    "preferences_service",
    "adherence_service",
]
