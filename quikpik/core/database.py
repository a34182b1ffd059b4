"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL) or a shared
  connection for in-memory SQLite
- Table definitions for subscription state, webhook ledger and audit trail
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Numeric, Index, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging

from quikpik.core.config import settings


logger = logging.getLogger("quikpik")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

DEFAULT_SQLITE_URL = "sqlite:///./quikpik.db"

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """Get the database URL from settings, falling back to a local SQLite file."""
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    logger.warning("DATABASE_URL not set, using local SQLite database")
    return DEFAULT_SQLITE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, echo=False, **kwargs)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits when the block exits cleanly, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Plan catalog (seeded at startup, read-only at runtime)
plans = Table(
    'plans',
    metadata,
    Column('tier', String(20), primary_key=True),
    Column('name', String(100), nullable=False),
    Column('monthly_price', Numeric(10, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('provider_price_ref', String(100), nullable=True),
    Column('limits', JSON, nullable=False),
    Column('sort_order', Integer, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# One row per wholesaler account
account_subscriptions = Table(
    'account_subscriptions',
    metadata,
    Column('account_id', String(100), primary_key=True),
    Column('current_tier', String(20), nullable=False, server_default='free'),
    Column('provider_customer_ref', String(100), nullable=True, unique=True),
    Column('provider_subscription_ref', String(100), nullable=True, unique=True),
    Column('status', String(20), nullable=False, server_default='active'),  # active, past_due, canceled
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('pending_downgrade_target', String(20), nullable=True),
    # Provider timestamp of the newest event applied to this row
    Column('last_event_at', DateTime(timezone=True), nullable=True),
    # Bumped on every write; writes are conditional on the version they read
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_account_subscriptions_customer_ref', 'provider_customer_ref'),
    Index('idx_account_subscriptions_subscription_ref', 'provider_subscription_ref'),
    Index('idx_account_subscriptions_status_period', 'status', 'current_period_end'),
)

# Provider subscriptions that reached canceled; never reanimated
ended_subscriptions = Table(
    'ended_subscriptions',
    metadata,
    Column('provider_subscription_ref', String(100), primary_key=True),
    Column('account_id', String(100), nullable=True, index=True),
    Column('ended_at', DateTime(timezone=True), nullable=False),
)

# Webhook ledger: dedup by provider event id, processing outcome, retry schedule
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('account_id', String(100), nullable=True, index=True),
    Column('payload_hash', String(64), nullable=False),
    Column('payload', JSON, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('outcome', String(20), nullable=True),  # processing, applied, recorded, stale, unmatched, ignored, failed
    Column('claimed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Column('attempt_count', Integer, nullable=False, server_default='0'),
    Column('next_attempt_at', DateTime(timezone=True), nullable=True),
    Index('idx_billing_events_retry', 'processed', 'next_attempt_at'),
)

# Subscription audit trail
subscription_audit_log = Table(
    'subscription_audit_log',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), nullable=False, index=True),
    Column('event_type', String(50), nullable=False, index=True),
    Column('from_tier', String(20), nullable=True),
    Column('to_tier', String(20), nullable=True),
    Column('status', String(20), nullable=True),
    Column('provider_customer_ref', String(100), nullable=True),
    Column('provider_subscription_ref', String(100), nullable=True),
    Column('provider_event_id', String(100), nullable=True),
    Column('reason', Text, nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, index=True),
    Index('idx_subscription_audit_account_created', 'account_id', 'created_at'),
)

# Usage deltas emitted by products, broadcasts, team and group features
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), nullable=False),
    Column('resource', String(50), nullable=False),
    Column('delta', Integer, nullable=False, server_default='1'),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Index('idx_usage_events_account_resource_occurred', 'account_id', 'resource', 'occurred_at'),
)

# Maintenance job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', JSON, nullable=True),
)
