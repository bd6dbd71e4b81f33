"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Test database support
- Table definitions for the subscription engine
"""
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    BigInteger,
    String,
    DateTime,
    Boolean,
    Float,
    JSON,
    Text,
    Index,
    UniqueConstraint,
    false,
    true,
    text,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from backend.core.config import settings


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

logger = logging.getLogger("subengine.database")


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in url


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
        # One shared connection for in-memory databases so every session sees the same schema
        if _is_memory_sqlite(url):
            _engine = create_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=False,
            )
        else:
            _engine = create_engine(url, connect_args={"check_same_thread": False}, echo=False)
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

    # Create session factory
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

    Everything executed inside one block commits or rolls back together,
    which is what the multi-row lock/unlock writes rely on.

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


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it."""
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


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
        logger.warning(f"[database] connection check failed: {e}")
        return False


# Users (identity is owned upstream; this row carries provider ids and the
# advisory entitlement cache, which tolerates last-write-wins)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('email', String(255), nullable=True),
    Column('phone', String(50), nullable=True),
    Column('provider_customer_id', String(100), nullable=True),
    Column('provider_customer_updated_at', DateTime(timezone=True), nullable=True),
    Column('subscription_tier', Integer, nullable=False, server_default=text('0')),
    Column('subscription_name', String(100), nullable=True),
    Column('storage_limit_gb', Float, nullable=True),
    Column('verification_type', String(20), nullable=False, server_default='none'),
    Column('entitlement_cache', JSON, nullable=True),
    Column('last_entitlement_update', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_app_users_created_at', 'created_at'),
)

# Plan catalog
subscription_plans = Table(
    'subscription_plans',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('name', String(100), nullable=False),
    Column('display_name', String(200), nullable=False),
    Column('tier', Integer, nullable=False, server_default=text('0')),
    Column('type', String(30), nullable=False),  # subscription | storage_addon
    Column('billing_cycle', String(20), nullable=False, server_default='monthly'),
    Column('price', Float, nullable=False),
    Column('price_yearly', Float, nullable=True),
    Column('duration_days', Integer, nullable=False, server_default=text('30')),
    Column('duration_days_yearly', Integer, nullable=False, server_default=text('365')),
    Column('storage_gb', Integer, nullable=False, server_default=text('0')),
    Column('features', JSON, nullable=True),
    Column('sort_order', Integer, nullable=False, server_default=text('99')),
    Column('is_best_value', Boolean, nullable=False, server_default=false()),
    Column('provider_plan_id', String(100), nullable=True),
    Column('provider_plan_created_at', DateTime(timezone=True), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscription_plans_name_cycle', 'name', 'billing_cycle'),
    Index('idx_subscription_plans_active', 'is_active'),
)

# Subscription records (never deleted; terminal states retained for history)
user_subscriptions = Table(
    'user_subscriptions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(64), nullable=False),
    Column('plan_type', String(30), nullable=False),
    Column('plan_tier', Integer, nullable=False, server_default=text('0')),
    Column('plan_name', String(100), nullable=True),
    Column('plan_display_name', String(200), nullable=True),
    Column('plan_snapshot', JSON, nullable=True),  # plan terms frozen at purchase time
    Column('price_paid', Float, nullable=True),
    Column('billing_cycle', String(20), nullable=False, server_default='monthly'),
    Column('status', String(30), nullable=False),
    Column('start_date', DateTime(timezone=True), nullable=True),
    Column('expiry_date', DateTime(timezone=True), nullable=True),
    Column('grace_period_end_date', DateTime(timezone=True), nullable=True),
    Column('auto_renew', Boolean, nullable=False, server_default=true()),
    Column('provider_subscription_id', String(100), nullable=True, unique=True),
    Column('provider_customer_id', String(100), nullable=True),
    Column('scheduled_change', JSON, nullable=True),
    Column('previous_subscription_id', String(64), nullable=True),
    Column('upgrade_credit', Float, nullable=True),
    Column('last_payment_id', String(100), nullable=True),
    Column('charge_count', Integer, nullable=False, server_default=text('0')),
    Column('reminders_sent', JSON, nullable=True),
    Column('cancellation_type', String(30), nullable=True),
    Column('granted_by', String(100), nullable=True),
    Column('grant_note', Text, nullable=True),
    Column('status_changed_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_user_subscriptions_user_status', 'user_id', 'status'),
    Index('idx_user_subscriptions_status_expiry', 'status', 'expiry_date'),
    Index('idx_user_subscriptions_status_grace', 'status', 'grace_period_end_date'),
)

# Content owned by the external content subsystem; only lock fields are written here
content_items = Table(
    'content_items',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('owner_id', String(100), nullable=False),
    Column('collection', String(50), nullable=False, server_default='reels'),
    Column('title', Text, nullable=True),
    Column('is_private', Boolean, nullable=False, server_default=true()),
    Column('file_size_bytes', BigInteger, nullable=False, server_default=text('0')),
    Column('is_locked', Boolean, nullable=False, server_default=false()),
    Column('locked_at', DateTime(timezone=True), nullable=True),
    Column('lock_reason', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_content_items_owner_private', 'owner_id', 'is_private', 'is_locked'),
    Index('idx_content_items_owner_created', 'owner_id', 'created_at'),
)

# Durable job queue with claim leases
background_jobs = Table(
    'background_jobs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_type', String(50), nullable=False),
    Column('payload', JSON, nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, processing, completed, failed
    Column('attempts', Integer, nullable=False, server_default=text('0')),
    Column('last_error', Text, nullable=True),
    Column('lease_owner', String(100), nullable=True),
    Column('lease_expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=True),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    Column('failed_at', DateTime(timezone=True), nullable=True),
    Index('idx_background_jobs_status_created', 'status', 'created_at'),
    Index('idx_background_jobs_lease', 'status', 'lease_expires_at'),
)

# Append-only webhook audit trail (never read by business logic)
webhook_logs = Table(
    'webhook_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event', String(100), nullable=False),
    Column('provider_subscription_id', String(100), nullable=True),
    Column('payload', JSON, nullable=True),
    Column('status', String(20), nullable=False),  # processed, ignored, failed, rejected
    Column('error', Text, nullable=True),
    Column('processed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_webhook_logs_event', 'event'),
    Index('idx_webhook_logs_processed_at', 'processed_at'),
)

# Applied provider payments; the unique payment id dedupes `charged` redeliveries
subscription_transactions = Table(
    'subscription_transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('subscription_id', String(64), nullable=True),
    Column('provider_subscription_id', String(100), nullable=True),
    Column('provider_payment_id', String(100), nullable=False),
    Column('type', String(30), nullable=False),  # renewal, upgrade_order
    Column('amount', Float, nullable=False, server_default=text('0')),
    Column('status', String(20), nullable=False, server_default='success'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('provider_payment_id', name='uq_subscription_transactions_payment'),
    Index('idx_subscription_transactions_user', 'user_id'),
)

# One-off orders (upgrade phase one)
subscription_payments = Table(
    'subscription_payments',
    metadata,
    Column('provider_order_id', String(100), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(64), nullable=False),
    Column('billing_cycle', String(20), nullable=False),
    Column('purpose', String(30), nullable=False, server_default='upgrade'),
    Column('amount', Float, nullable=False),
    Column('credit_applied', Float, nullable=False, server_default=text('0')),
    Column('previous_subscription_id', String(64), nullable=True),
    Column('provider_payment_id', String(100), nullable=True),
    Column('status', String(20), nullable=False, server_default='CREATED'),  # CREATED, SUCCESS, FAILED
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscription_payments_user_status', 'user_id', 'status'),
)

# In-app notification inbox
notifications = Table(
    'notifications',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('type', String(50), nullable=False),
    Column('title', String(200), nullable=False),
    Column('body', Text, nullable=False),
    Column('data', JSON, nullable=True),
    Column('is_read', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_notifications_user_created', 'user_id', 'created_at'),
)

# Admin / system audit log
admin_audit = Table(
    'admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),  # "legacy:<hash>" or "system_job"
    Column('action', String(100), nullable=False),
    Column('target_user_id', String(100), nullable=True),
    Column('target_resource', String(200), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_admin_audit_action', 'action'),
    Index('idx_admin_audit_user_id', 'target_user_id'),
)

# Sweep / worker run history
job_runs = Table(
    'job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
    Index('idx_job_runs_name_started', 'job_name', 'started_at'),
)


@contextmanager
def use_session(session: Optional[Session] = None):
    """
    Join the caller's session when one is given, otherwise open a new one.

    Service functions take an optional ``session`` so a webhook or job can run
    several writes in one transaction. Sessions must not be nested: the
    in-memory SQLite test engine shares a single connection.
    """
    if session is not None:
        yield session
        return
    with get_db_session() as new_session:
        yield new_session
