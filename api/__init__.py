"""
API Module
FastAPI routers for the CareCircle application
"""

from api.medications import router as medications_router
from api.schedules import router as schedules_router
from api.dose_events import router as dose_events_router
from api.invitations import router as invitations_router
from api.family_access import router as family_access_router
from api.adherence import router as adherence_router
from api.preferences import router as preferences_router
from api.missed_detection import router as missed_detection_router

from api.deps import (
    get_db,
    get_current_user,
    services,
)


__all__ = [
    # Routers
    "medications_router",
    "schedules_router",
    "dose_events_router",
    "invitations_router",
    "family_access_router",
    "adherence_router",
    "preferences_router",
    "missed_detection_router",
    # Dependencies
    "get_db",
    "get_current_user",
    "services",
]


def include_routers(app, prefix: str = "/api/v1"):
    """
    Include all API routers in the FastAPI app

    Usage:
        from api import include_routers
        include_routers(app)
    """
    app.include_router(medications_router, prefix=prefix)
    app.include_router(schedules_router, prefix=prefix)
    app.include_router(dose_events_router, prefix=prefix)
    app.include_router(invitations_router, prefix=prefix)
    app.include_router(family_access_router, prefix=prefix)
    app.include_router(adherence_router, prefix=prefix)
    app.include_router(preferences_router, prefix=prefix)
    app.include_router(missed_detection_router, prefix=prefix)
