"""
API Dependencies
Common dependencies for FastAPI endpoints
"""

from typing import Generator, Optional
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from database import SessionLocal
from exceptions import AuthenticationError
import models


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency
    Yields a SQLAlchemy session and ensures cleanup
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_email: Optional[str] = Header(None, alias="X-User-Email"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
    db: Session = Depends(get_db)
) -> models.UserProfile:
    """
    Identity verified upstream, passed in headers

    The profile is created on first sight.
    """
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Authentication required")
    if not x_user_email or not x_user_email.strip():
        raise AuthenticationError("Authenticated email required")

    from services.user_service import user_service
    return await user_service.get_or_create_profile(
        x_user_id.strip(),
        x_user_email,
        name=x_user_name,
        db=db
    )


class ServiceDependency:
    """
    Dependency injection for services
    """

    @staticmethod
    def get_user_service():
        from services.user_service import user_service
        return user_service

    @staticmethod
    def get_access_service():
        from services.access_service import access_service
        return access_service

    @staticmethod
    def get_medication_service():
        from services.medication_service import medication_service
        return medication_service

    @staticmethod
    def get_schedule_service():
        from services.schedule_service import schedule_service
        return schedule_service

    @staticmethod
    def get_dose_event_service():
        from services.dose_event_service import dose_event_service
        return dose_event_service

    @staticmethod
    def get_time_bucket_service():
        from services.time_bucket_service import time_bucket_service
        return time_bucket_service

    @staticmethod
    def get_adherence_service():
        from services.adherence_service import adherence_service
        return adherence_service

    @staticmethod
    def get_preferences_service():
        from services.preferences_service import preferences_service
        return preferences_service

    @staticmethod
    def get_grace_period_service():
        from services.grace_period_service import grace_period_service
        return grace_period_service

    @staticmethod
    def get_missed_dose_detector():
        from actions.missed_dose_detector import missed_dose_detector
        return missed_dose_detector


# Service dependency instances
services = ServiceDependency()
