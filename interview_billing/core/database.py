"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for SQLite)
- Dialect-aware upsert statements for atomic increments
- Table definitions for the metering ledger
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional
import os

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from interview_billing.core.config import settings

logger = logging.getLogger("interview_billing")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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

    Commits on success and rolls back on any exception.

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


def upsert(session: Session, table: Table):
    """Return a dialect-specific INSERT supporting ``on_conflict_do_update``.

    Every atomic upsert and counter increment in the ledger goes through this,
    so the datastore resolves races in a single statement:

        stmt = upsert(session, usage_records).values(...)
        stmt = stmt.on_conflict_do_update(
            index_elements=[...],
            set_={"count": usage_records.c.count + stmt.excluded.count},
        )
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"upsert is not supported for dialect {dialect!r}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes read back from the store (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


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
        logger.warning("[db] connection check failed", extra={"error": str(e)})
        return False


# Canonical users mirrored from the identity provider
users = Table(
    'app_users',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('external_id', String(100), nullable=False, unique=True),
    Column('email', String(320), nullable=True),
    Column('first_name', Text, nullable=True),
    Column('last_name', Text, nullable=True),
    Column('username', String(200), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('image_url', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_app_users_email', 'email'),
)

# One row per user; sole writer is the subscription transition handler
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(36), primary_key=True),
    Column('plan_key', String(50), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscriptions_plan_key', 'plan_key'),
)

# Per (user, usage type, billing period) counters
usage_records = Table(
    'usage_records',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(36), nullable=False),
    Column('usage_type', String(64), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('period_end', DateTime(timezone=True), nullable=False),
    Column('count', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'usage_type', 'period_start', name='uq_usage_records_user_type_period'),
    Index('idx_usage_records_user', 'user_id'),
)

# Non-expiring top-up minutes
credit_balances = Table(
    'credit_balances',
    metadata,
    Column('user_id', String(36), primary_key=True),
    Column('balance', Integer, nullable=False, server_default='0'),
    Column('lifetime_purchased', Integer, nullable=False, server_default='0'),
    Column('lifetime_consumed', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

coupons = Table(
    'coupons',
    metadata,
    Column('code', String(64), primary_key=True),
    Column('minutes', Integer, nullable=False),
    Column('description', Text, nullable=True),
    Column('active', Boolean, nullable=False, server_default='1'),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('max_redemptions', Integer, nullable=True),
    Column('redemption_count', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

coupon_redemptions = Table(
    'coupon_redemptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(36), nullable=False),
    Column('code', String(64), nullable=False),
    Column('minutes', Integer, nullable=False),
    Column('redeemed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'code', name='uq_coupon_redemptions_user_code'),
    Index('idx_coupon_redemptions_code', 'code'),
)

interview_sessions = Table(
    'interview_sessions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('last_heartbeat_at', DateTime(timezone=True), nullable=False),
    Column('ended_at', DateTime(timezone=True), nullable=True),
    Column('end_reason', String(32), nullable=True),
    Column('duration_seconds', Integer, nullable=False, server_default='0'),
    Column('duration_deducted', Boolean, nullable=False, server_default='0'),
    Column('minutes_deducted', Integer, nullable=False, server_default='0'),
    Column('monthly_deducted', Integer, nullable=False, server_default='0'),
    Column('credit_deducted', Integer, nullable=False, server_default='0'),
    Column('overage_minutes', Integer, nullable=False, server_default='0'),
    Index('idx_interview_sessions_user', 'user_id'),
    Index('idx_interview_sessions_status_heartbeat', 'status', 'last_heartbeat_at'),
)

# Identity-provider webhook idempotency
webhook_events = Table(
    'webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('processed', Boolean, nullable=False, server_default='0'),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_webhook_events_received_at', 'received_at'),
)
