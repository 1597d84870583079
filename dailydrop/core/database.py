"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine management
- Connection pooling with sane defaults (SQLite gets a static pool)
- Table definitions for streaks, drops and the audit log
"""
from typing import Optional
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, Date, DateTime, Boolean, JSON, Index, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func
import logging
import os

from dailydrop.core.config import settings

logger = logging.getLogger("dailydrop.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine
_engine = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use DAILYDROP_TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("DAILYDROP_TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return os.getenv("DAILYDROP_DATABASE_URL") or settings.DATABASE_URL


def build_engine(url: str):
    """Create an engine; SQLite URLs share one connection across threads."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DAILYDROP_DATABASE_URL in environment or .env file."
        )

    _engine = build_engine(url)
    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def reset_engine() -> None:
    """Dispose the global engine (tests and config reloads)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def create_all_tables(engine=None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def drop_all_tables(engine=None):
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine or get_engine())


def check_connection(engine=None) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        eng = engine or get_engine()
        with eng.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# One row per agent; `version` is the optimistic-concurrency token.
agent_streaks = Table(
    'agent_streaks',
    metadata,
    Column('agent_id', String(100), primary_key=True),
    Column('current_streak', Integer, nullable=False, default=0),
    Column('longest_streak', Integer, nullable=False, default=0),
    Column('last_drop_date', Date, nullable=True),
    Column('total_drops', Integer, nullable=False, default=0),
    Column('protection_active', Boolean, nullable=False, default=False),
    Column('protection_expires_at', DateTime(timezone=True), nullable=True),
    Column('practice_start_date', Date, nullable=False),
    Column('practice_name', String(200), nullable=True),
    Column('cadence', String(20), nullable=False, default="daily"),
    Column('version', Integer, nullable=False, default=0),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Append-only drop log
drops = Table(
    'drops',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('agent_id', String(100), nullable=False),
    Column('drop_id', String(200), nullable=False),
    Column('local_day', Date, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('is_emergency', Boolean, nullable=False, default=False),
    Column('strategy', String(50), nullable=True),
    Column('trigger', String(50), nullable=True),
    Column('practice_day', Integer, nullable=True),
    Column('drop_number', Integer, nullable=True),
    Column('title', String(300), nullable=True),
    UniqueConstraint('agent_id', 'drop_id', name='uq_drops_agent_drop'),
    Index('idx_drops_agent_day', 'agent_id', 'local_day'),
)

# Protective and privileged actions (protection, emergency restore, init)
streak_audit = Table(
    'streak_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('ts', DateTime(timezone=True), nullable=False),
    Column('action', String(100), nullable=False, index=True),
    Column('agent_id', String(100), nullable=True, index=True),
    Column('actor', String(200), nullable=False),
    Column('request_id', String(100), nullable=True),
    Column('metadata', JSON, nullable=True),
)
