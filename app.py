"""
CareCircle Backend
Main FastAPI application for shared medication scheduling and adherence
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Configuration and database
from config import settings
from database import init_db, DatabaseHealthCheck
from exceptions import CareCircleError
from api.schemas.common import ErrorResponse

from actions.missed_dose_detector import missed_dose_monitor
from api import include_routers
from tools.notification_service import invitation_notifier

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT
)
logger = logging.getLogger(__name__)


# ==================== LIFESPAN ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown"""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENV}")

    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    missed_dose_monitor.start()

    yield

    # Shutdown
    await missed_dose_monitor.stop()
    await invitation_notifier.close()
    logger.info(f"Shutting down {settings.APP_NAME}")


# ==================== APP INITIALIZATION ====================

app = FastAPI(
    title=settings.APP_NAME,
    description="""
    ## CareCircle API

    Medication scheduling, adherence tracking and family sharing.

    ### Features
    - **Schedules**: Recurring schedules expanded into concrete dose events
    - **Dose actions**: Take, snooze, skip, reschedule and mark missed
    - **Missed dose detection**: Periodic sweep with per-patient grace periods
    - **Family access**: Invitations and capability-based sharing
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Attach modular API routers (prefix /api/v1)
include_routers(app, prefix=settings.API_PREFIX)


# ==================== EXCEPTION HANDLERS ====================

def error_response(status_code: int, code: str, message: str, details: dict = None) -> JSONResponse:
    """Failure envelope; `error` carries the readable text and `code` the machine tag"""
    content = ErrorResponse(error=message, code=code, message=message, details=details or None).model_dump()
    if content["details"] is None:
        del content["details"]
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(CareCircleError)
async def care_circle_exception_handler(request, exc: CareCircleError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code}: {exc.message}")
    return error_response(exc.status_code, exc.error_code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    return error_response(400, "validation_error", message, {"errors": [
        {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg")}
        for e in errors
    ]})


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    return error_response(exc.status_code, "http_error", str(exc.detail))


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return error_response(
        500,
        "internal_error",
        "An unexpected error occurred" if not settings.DEBUG else str(exc)
    )


# ==================== HEALTH ====================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - basic health check"""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "healthy",
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Detailed health check endpoint"""
    db_connected = DatabaseHealthCheck.is_connected()

    return {
        "status": "healthy" if db_connected else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {
            "database": {
                "status": "up" if db_connected else "down",
                "type": "sqlite" if "sqlite" in settings.DATABASE_URL else "postgresql"
            },
            "missed_dose_monitor": {
                "enabled": missed_dose_monitor.enabled,
                "running": missed_dose_monitor.is_running,
                "last_run": missed_dose_monitor.last_result.to_dict() if missed_dose_monitor.last_result else None,
            },
            "email": {
                "configured": invitation_notifier.is_configured
            },
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
