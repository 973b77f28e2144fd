"""
Configuration management for CareCircle
"""

from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "CareCircle"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./care_circle.db"
    DATABASE_ECHO: bool = False
    TRANSACTION_MAX_RETRIES: int = 5

    # Schedule expansion
    EXPANSION_HORIZON_DAYS: int = 30

    # Missed dose detection
    DEFAULT_GRACE_MINUTES: int = 30
    MISSED_DETECTION_ENABLED: bool = True
    MISSED_DETECTION_INTERVAL_MINUTES: int = 15
    MISSED_DETECTION_SWEEP_BUDGET_SECONDS: float = 240.0
    MISSED_DETECTION_BATCH_LIMIT: int = 500

    # Invitations / email delivery
    INVITATION_BASE_URL: str = "http://localhost:5173/invitation"
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_API_URL: str = "https://api.sendgrid.com/v3/mail/send"
    EMAIL_FROM_ADDRESS: str = "noreply@carecircle.local"
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class EngineConfig:
    """Fixed policy values for the scheduling and adherence engine"""

    # Dose taking
    ON_TIME_WINDOW_MINUTES: int = 30
    LATE_FLAG_MINUTES: int = 240

    # Snoozing
    SNOOZE_MIN_MINUTES: int = 1
    SNOOZE_MAX_MINUTES: int = 480

    # Time buckets
    BUCKET_NOW_MINUTES: int = 15
    BUCKET_DUE_SOON_MINUTES: int = 60

    # Adherence
    POOR_ADHERENCE_THRESHOLD: float = 0.80

    # Invitations
    INVITATION_EXPIRY_DAYS: int = 7

    # Grace periods
    MAX_GRACE_MINUTES: int = 1440
    SLOT_GRACE_MINUTES: dict = {"morning": 30, "noon": 45, "evening": 30, "bedtime": 60}
    MEDICATION_TYPE_GRACE_MINUTES: dict = {"critical": 15, "standard": 30, "vitamin": 120, "prn": 0}
    WEEKEND_GRACE_MULTIPLIER: float = 1.5
    HOLIDAY_GRACE_MULTIPLIER: float = 2.0
    MAX_GRACE_MULTIPLIER: float = 5.0

    # Name fragments used to classify medications for grace rules
    CRITICAL_MEDICATION_KEYWORDS: tuple = (
        "insulin", "metformin", "lisinopril", "atorvastatin", "metoprolol",
        "warfarin", "digoxin", "levothyroxine", "prednisone", "amlodipine",
        "losartan", "carvedilol", "enalapril", "furosemide", "spironolactone",
        "diltiazem", "verapamil", "propranolol", "atenolol", "bisoprolol",
    )
    VITAMIN_KEYWORDS: tuple = (
        "vitamin", "supplement", "calcium", "iron", "magnesium", "zinc",
        "multivitamin", "omega", "fish oil", "coq10", "biotin", "folic acid",
        "b12", "b6", "thiamine", "riboflavin", "niacin", "pantothenic",
    )


# Database table names
class TableNames:
    USERS = "users"
    MEDICATIONS = "medications"
    SCHEDULES = "medication_schedules"
    DOSE_EVENTS = "dose_events"
    RELATIONSHIPS = "family_access"
    GRACE_PERIODS = "grace_period_configs"
    PATIENT_PREFERENCES = "patient_preferences"


settings = get_settings()
engine_config = EngineConfig()
