"""
Database Configuration and Session Management
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
import logging

logger = logging.getLogger(__name__)

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    PostgreSQL URLs are switched to the psycopg (v3) driver. SQLite is
    supported for local runs and tests.
    """
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    if database_url.startswith("sqlite"):
        # Worker threads share the engine; writers wait on the file lock
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using them
        pool_size=5,
        max_overflow=10
    )


def init_db(database_url: Optional[str], create_tables: bool = False) -> Optional[sessionmaker]:
    """
    Initialize database connection and return a session factory.

    Returns None when no database is configured. Callers own the returned
    factory and dispose its engine on shutdown.
    """
    if not database_url:
        logger.warning("DATABASE_URL not configured - database features disabled")
        return None

    logger.info("Connecting to database...")
    engine = create_db_engine(database_url)

    if create_tables:
        # Import models so they register with Base.metadata
        import tradechain.models  # noqa: F401
        Base.metadata.create_all(bind=engine)

    session_factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    logger.info("Database connection established")
    return session_factory
