"""
User Service
Profile documents for authenticated users
"""

import logging
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from sqlalchemy.orm import Session

from database import get_db_context
from exceptions import NotFoundError, ValidationError
import models


logger = logging.getLogger(__name__)


class UserService:
    """
    Service for user profile management
    """

    async def get_or_create_profile(
        self,
        user_id: str,
        email: str,
        name: Optional[str] = None,
        db: Optional[Session] = None
    ) -> models.UserProfile:
        """
        Return the profile for a verified identity, creating it on first sight.

        New users start as patients; accepting an invitation re-tags them.
        """
        def _get_or_create(session: Session) -> models.UserProfile:
            profile = session.get(models.UserProfile, user_id)
            if profile:
                normalized = email.strip().lower() if email else profile.email
                if normalized and profile.email != normalized:
                    profile.email = normalized
                    session.commit()
                return profile

            profile = models.UserProfile(
                id=user_id,
                email=(email or "").strip().lower(),
                name=name,
                user_type=models.UserType.PATIENT,
                linked_patient_ids=[],
                family_member_ids=[]
            )
            session.add(profile)
            session.commit()
            session.refresh(profile)

            logger.info(f"Created user profile {user_id}")
            return profile

        if db:
            return _get_or_create(db)

        with get_db_context() as session:
            return _get_or_create(session)

    async def get_profile(
        self,
        user_id: str,
        db: Optional[Session] = None
    ) -> models.UserProfile:
        """Get a profile by id, raising NotFoundError when absent"""
        def _get(session: Session) -> models.UserProfile:
            profile = session.get(models.UserProfile, user_id)
            if not profile:
                raise NotFoundError(f"User profile {user_id} not found")
            return profile

        if db:
            return _get(db)

        with get_db_context() as session:
            return _get(session)

    async def update_timezone(
        self,
        user_id: str,
        tz_name: str,
        db: Optional[Session] = None
    ) -> models.UserProfile:
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown timezone: {tz_name}")

        def _update(session: Session) -> models.UserProfile:
            profile = session.get(models.UserProfile, user_id)
            if not profile:
                raise NotFoundError(f"User profile {user_id} not found")
            profile.timezone = tz_name
            session.commit()
            session.refresh(profile)
            return profile

        if db:
            return _update(db)

        with get_db_context() as session:
            return _update(session)


# Singleton instance
user_service = UserService()
