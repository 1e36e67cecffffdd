"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite, including in-memory)
- Table definitions for entitlements, access codes and the webhook ledger
"""
from typing import Optional
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, UniqueConstraint
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from entitlement_engine.core.config import settings


logger = logging.getLogger(__name__)

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
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    """Create an engine with pooling appropriate for the backend."""
    if make_url(url).get_backend_name() == "sqlite":
        # One shared connection so in-memory databases survive across sessions.
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
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


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

    _engine = build_engine(url)

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


def create_all_tables(engine=None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def reset_database(engine=None):
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    bind = engine or get_engine()
    metadata.drop_all(bind=bind)
    metadata.create_all(bind=bind)


# Entitlement records: one row per owner, guarded by `version` on every write
entitlements = Table(
    'entitlements',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('owner_id', String(100), nullable=False),
    Column('status', String(20), nullable=False, server_default='none'),
    Column('plan_tier', String(20), nullable=False, server_default='none'),
    Column('trial_started_at', DateTime(timezone=True), nullable=True),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('billing_customer_ref', String(100), nullable=True),
    Column('billing_subscription_ref', String(100), nullable=True),
    Column('billing_price_ref', String(100), nullable=True),
    Column('billing_interval', String(20), nullable=True),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('grace_period_ends_at', DateTime(timezone=True), nullable=True),
    Column('resource_limit', Integer, nullable=True),  # NULL = unlimited
    Column('last_event_at', DateTime(timezone=True), nullable=True),  # provider time of last applied webhook
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('owner_id', name='uq_entitlements_owner_id'),
    Index('idx_entitlements_status', 'status'),
    Index('idx_entitlements_subscription_ref', 'billing_subscription_ref'),
    Index('idx_entitlements_customer_ref', 'billing_customer_ref'),
)

# Access codes (created out-of-band by admins)
access_codes = Table(
    'access_codes',
    metadata,
    Column('code', String(64), primary_key=True),  # stored upper-case
    Column('days_granted', Integer, nullable=False),
    Column('max_redemptions', Integer, nullable=True),  # NULL = unlimited
    Column('redemption_count', Integer, nullable=False, server_default='0'),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('description', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Access code redemptions: one per (code, owner)
access_code_redemptions = Table(
    'access_code_redemptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('code', String(64), nullable=False),
    Column('owner_id', String(100), nullable=False),
    Column('redeemed_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('code', 'owner_id', name='uq_access_code_redemptions_code_owner'),
    Index('idx_access_code_redemptions_owner', 'owner_id'),
)

# Webhook idempotency ledger (append-only, pruned by retention job)
webhook_event_log = Table(
    'webhook_event_log',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(255), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('owner_id', String(100), nullable=True),
    Column('outcome', String(30), nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=True),
    Column('processed_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('event_id', name='uq_webhook_event_log_event_id'),
    Index('idx_webhook_event_log_processed_at', 'processed_at'),
    Index('idx_webhook_event_log_owner', 'owner_id'),
)
