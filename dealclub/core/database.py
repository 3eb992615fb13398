"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine management
- Connection pooling with sane defaults
- SQLite write serialization (BEGIN IMMEDIATE) so quota checks and inserts
  cannot interleave across connections
- Table definitions for plans, subscribers, deals and redemptions
"""
import logging
import os
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from dealclub.core.config import settings

logger = logging.getLogger("dealclub")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# SQLite busy timeout (seconds) while waiting for the write lock
SQLITE_BUSY_TIMEOUT = 30

# Global engine
_engine: Optional[Engine] = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _install_sqlite_locking(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, which lets two connections
    both read the same count before either inserts. Disabling the driver's
    transaction handling and emitting BEGIN IMMEDIATE ourselves serializes
    check-then-insert sequences.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, echo: Optional[bool] = None) -> Engine:
    """Create an engine for `url` with the locking behaviour the quota engine needs."""
    echo = settings.DB_ECHO if echo is None else echo
    if _is_sqlite(url):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        )
        _install_sqlite_locking(engine)
        return engine

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=echo,
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
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
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    _engine = build_engine(url)

    return _engine


def get_engine() -> Engine:
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


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
        logger.warning("Database connection check failed", extra={"error_code": type(e).__name__})
        return False


# Plans: user tiers (redemption_limit) and merchant tiers (posting_limit)
plans = Table(
    'plans',
    metadata,
    Column('plan_key', String(100), primary_key=True),
    Column('name', Text, nullable=False),
    Column('plan_type', String(20), nullable=False),
    Column('priority', Integer, nullable=False, server_default='1'),
    Column('posting_limit', Integer, nullable=True),
    Column('redemption_limit', Integer, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('billing_cycle', String(20), nullable=False, server_default='monthly'),
    Column('sort_order', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_plans_type_priority', 'plan_type', 'priority'),
)

# Subscribers: users and businesses with their plan assignment
subscribers = Table(
    'subscribers',
    metadata,
    Column('subscriber_id', String(100), primary_key=True),
    Column('kind', String(20), nullable=False),
    Column('plan_key', String(100), ForeignKey('plans.plan_key'), nullable=True),
    Column('plan_expiry', DateTime(timezone=True), nullable=True),
    Column('custom_limit', Integer, nullable=True),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('display_name', Text, nullable=True),
    Column('owner_user_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscribers_owner', 'owner_user_id'),
    Index('idx_subscribers_plan', 'plan_key'),
)

# Deals: soft-deleted rows stay so they keep counting against posting quota
deals = Table(
    'deals',
    metadata,
    Column('deal_id', String(100), primary_key=True),
    Column('business_id', String(100), ForeignKey('subscribers.subscriber_id'), nullable=False),
    Column('title', Text, nullable=False),
    Column('description', Text, nullable=True),
    Column('status', String(30), nullable=False, server_default='pending_approval'),
    Column('member_limit', Integer, nullable=True),
    Column('max_redemptions', Integer, nullable=True),
    Column('required_priority', Integer, nullable=False, server_default='1'),
    Column('valid_until', DateTime(timezone=True), nullable=True),
    Column('rejection_reason', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=True),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    Index('idx_deals_business_created', 'business_id', 'created_at'),
    Index('idx_deals_status', 'status'),
)

# Redemptions: one pending row per (deal, user), decided rows are immutable
redemptions = Table(
    'redemptions',
    metadata,
    Column('redemption_id', String(100), primary_key=True),
    Column('deal_id', String(100), ForeignKey('deals.deal_id'), nullable=False),
    Column('subscriber_id', String(100), ForeignKey('subscribers.subscriber_id'), nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('redemption_code', String(64), nullable=False, unique=True),
    Column('requested_at', DateTime(timezone=True), nullable=False),
    Column('decided_at', DateTime(timezone=True), nullable=True),
    Column('decided_by', String(100), nullable=True),
    Column('rejection_reason', Text, nullable=True),
    Index('idx_redemptions_subscriber_decided', 'subscriber_id', 'status', 'decided_at'),
    Index('idx_redemptions_deal_status', 'deal_id', 'status'),
    Index(
        'uq_redemptions_one_pending',
        'deal_id',
        'subscriber_id',
        unique=True,
        postgresql_where=text("status = 'pending'"),
        sqlite_where=text("status = 'pending'"),
    ),
)
