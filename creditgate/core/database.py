"""
Database engine, sessions and table definitions.

Tables are plain SQLAlchemy Core; services issue conditional UPDATEs against
them so concurrent writers never need row locks held across round trips.
SQLite (tests, local runs) is driven with BEGIN IMMEDIATE.
"""
from contextlib import contextmanager
import logging
import os
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, ForeignKey, UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import func

from creditgate.core.config import settings

logger = logging.getLogger("creditgate.db")

metadata = MetaData()

POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600
SQLITE_BUSY_TIMEOUT = 30

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL from the environment wins over DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _configure_sqlite(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two readers
    # deadlock on lock promotion. Take the write lock up front instead.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine(database_url: Optional[str] = None) -> Engine:
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    if url.startswith("sqlite"):
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        )
        _configure_sqlite(_engine)
    else:
        _engine = create_engine(
            url,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
        )

    _SessionLocal = sessionmaker(bind=_engine, autoflush=False)
    logger.info("db.engine_initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    One transaction per block: commit on clean exit, roll back on error.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    if _SessionLocal is None:
        init_engine()
    session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Idempotent; existing tables are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive. Tests and local development only."""
    metadata.drop_all(bind=get_engine())


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning("db.connection_check_failed", extra={"error": str(e)})
        return False

# Users and their embedded credit account
users = Table(
    'app_users',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('external_id', String(255), nullable=False, unique=True),
    Column('email', String(320), nullable=True),
    Column('provider_customer_id', String(100), nullable=True),
    Column('credits', Integer, nullable=False, server_default='0'),
    Column('monthly_credit_limit', Integer, nullable=False, server_default='0'),
    Column('credits_reset_at', DateTime(timezone=True), nullable=True),
    Column('credit_plan_slug', String(50), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_app_users_created_at', 'created_at'),
)

# One subscription row per user; status in (pending, active, cancelled)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('app_users.id'), nullable=False),
    Column('plan_slug', String(50), nullable=False),
    Column('provider_subscription_id', String(100), nullable=False),
    Column('provider_plan_id', String(100), nullable=True),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', name='uq_subscriptions_user_id'),
    UniqueConstraint('provider_subscription_id', name='uq_subscriptions_provider_id'),
    Index('idx_subscriptions_status_period_end', 'status', 'current_period_end'),
)

# Audit log of inbound webhook deliveries
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('provider_subscription_id', String(100), nullable=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('outcome', String(20), nullable=False),  # applied | duplicate | ignored | failed
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_events_received_at', 'received_at'),
    Index('idx_billing_events_provider_sub', 'provider_subscription_id'),
)


def matches_previous(column, raw_value):
    """WHERE fragment for a compare-and-swap against the value previously read."""
    if raw_value is None:
        return column.is_(None)
    return column == raw_value
