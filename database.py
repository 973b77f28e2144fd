"""
Database connection and session management for CareCircle
"""

import logging
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Callable, Generator, Optional, TypeVar

from config import settings


logger = logging.getLogger(__name__)

T = TypeVar("T")


# Create SQLAlchemy engine
if settings.DATABASE_URL.startswith("sqlite"):
    # SQLite specific configuration
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=settings.DATABASE_ECHO
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
else:
    # PostgreSQL or other databases
    engine = create_engine(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True
    )

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Base class for ORM models
Base = declarative_base()


class TransactionAborted(Exception):
    """Raised when a transaction keeps failing after all retries"""


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI routes to get database session.
    Automatically closes session after request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Context manager for database session.
    Use this for background tasks or non-FastAPI contexts.

    Usage:
        with get_db_context() as db:
            db.query(Item).all()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def run_in_transaction(
    session: Session,
    work: Callable[[Session], T],
    max_retries: Optional[int] = None
) -> T:
    """
    Run ``work`` as one atomic unit, retrying on write conflicts.

    ``work`` must re-read everything it depends on, because it is executed
    again from scratch after a conflict. Domain errors raised by ``work``
    roll the transaction back and propagate unchanged.

    Raises:
        TransactionAborted: if every attempt hit a write conflict
    """
    attempts = max_retries or settings.TRANSACTION_MAX_RETRIES
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        try:
            result = work(session)
            session.commit()
            return result
        except (OperationalError, StaleDataError) as e:
            session.rollback()
            last_error = e
            logger.warning(
                f"Transaction conflict (attempt {attempt}/{attempts}): {e}"
            )
        except Exception:
            session.rollback()
            raise

    raise TransactionAborted(
        f"Transaction failed after {attempts} attempts: {last_error}"
    )


def init_db() -> None:
    """
    Initialize database tables.
    Creates all tables defined in models.
    """
    # Import models to register them with Base
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized at: {settings.DATABASE_URL}")


def drop_db() -> None:
    """
    Drop all database tables.
    WARNING: This will delete all data!
    """
    Base.metadata.drop_all(bind=engine)
    logger.warning("All database tables dropped")


class DatabaseHealthCheck:
    """Database health check utilities"""

    @staticmethod
    def is_connected() -> bool:
        """Check if database is connected"""
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except OperationalError:
            return False


# Export commonly used items
__all__ = [
    "engine",
    "SessionLocal",
    "Base",
    "TransactionAborted",
    "get_db",
    "get_db_context",
    "run_in_transaction",
    "init_db",
    "drop_db",
    "DatabaseHealthCheck"
]
