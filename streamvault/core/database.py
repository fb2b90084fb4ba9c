"""
Entitlement store: engine, transactions and table definitions.

All tables hang off one MetaData and are used through SQLAlchemy Core.
PostgreSQL in production; SQLite (file or in-memory) for tests and local
development.
"""
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from streamvault.core.config import settings

logger = logging.getLogger("streamvault")

metadata = MetaData()

# Server pool sizing; request handlers hold a connection for one transaction
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL so test runs never touch real data."""
    return os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _is_memory_sqlite(url: str) -> bool:
    return ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:")


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(url):
            # Each new connection would get its own empty in-memory database
            options["poolclass"] = StaticPool
        return options
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)bind the module to a database. Disposes any previous engine."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured; set it in the environment or .env")

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, echo=False, **_engine_options(url))
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False)
    logger.info("db.engine_ready", extra={"dialect": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    One transaction per block: commit on normal exit, roll back on any
    exception (which is re-raised).

        with get_db_session() as session:
            session.execute(...)
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Create missing tables and indexes; existing ones are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    metadata.drop_all(bind=get_engine())


def reset_database() -> None:
    """Drop and recreate the schema. Tests only."""
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("db.unreachable", extra={"error_message": str(e)})
        return False


# Plan catalog
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('price_cents', Integer, nullable=False),
    Column('currency', String(3), nullable=False, server_default='usd'),
    Column('billing_period', String(10), nullable=False, server_default='month'),  # 'month' | 'year'
    Column('device_limit', Integer, nullable=False),
    Column('offline_allowed', Boolean, nullable=False, server_default='0'),
    Column('max_offline_downloads', Integer, nullable=False, server_default='0'),
    Column('external_price_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Users (full accounts and webhook-created placeholders)
users = Table(
    'users',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('email', String(320), nullable=False, unique=True),
    Column('password_hash', String(100), nullable=True),  # NULL = placeholder, no credentials yet
    Column('name', Text, nullable=True),
    Column('role', String(20), nullable=False, server_default='user'),
    Column('external_customer_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Subscriptions (local mirror of provider subscriptions, optimistic-locked)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('external_subscription_id', String(100), nullable=False, unique=True),
    Column('external_customer_id', String(100), nullable=True),
    Column('state', String(20), nullable=False),  # PENDING | ACTIVE | PAST_DUE | CANCELLED | EXPIRED
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    # Terms snapshot: plan limits in force for the current billing period
    Column('price_cents', Integer, nullable=False),
    Column('device_limit', Integer, nullable=False),
    Column('offline_allowed', Boolean, nullable=False),
    Column('max_offline_downloads', Integer, nullable=False),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscriptions_state', 'state'),
    # At most one PENDING/ACTIVE subscription per user
    Index(
        'uq_subscriptions_user_live',
        'user_id',
        unique=True,
        postgresql_where=text("state IN ('PENDING', 'ACTIVE')"),
        sqlite_where=text("state IN ('PENDING', 'ACTIVE')"),
    ),
)

# Registered playback devices
devices = Table(
    'devices',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('platform', String(20), nullable=False),
    Column('device_identifier', String(255), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('last_active_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'device_identifier', name='uq_devices_user_identifier'),
)

# Offline download licenses
download_licenses = Table(
    'download_licenses',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False),
    Column('episode_id', String(100), nullable=False),
    Column('token_hash', String(64), nullable=False, unique=True),  # sha256 of the opaque token
    Column('device_id', String(36), ForeignKey('devices.id'), nullable=True),  # bound at redemption
    Column('state', String(20), nullable=False),  # ISSUED | REDEEMED | REVOKED | EXPIRED
    Column('issued_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('redeemed_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Quota queries: (user_id, state, expires_at)
    Index('idx_download_licenses_user_state_expires', 'user_id', 'state', 'expires_at'),
)

# Signup saga correlation (phase 1 results, short TTL)
saga_intents = Table(
    'saga_intents',
    metadata,
    Column('key', String(255), primary_key=True),
    Column('email', String(320), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False),
    Column('request_hash', String(64), nullable=False),
    Column('external_customer_id', String(100), nullable=True),
    Column('external_subscription_id', String(100), nullable=True, index=True),
    Column('client_secret', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False, index=True),
)

# Provider webhook events (durable record + replay queue)
webhook_events = Table(
    'webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('external_subscription_id', String(100), nullable=True, index=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('payload', JSON, nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('status', String(20), nullable=False, server_default='received'),  # received | processed | ignored | failed
    Column('attempt_count', Integer, nullable=False, server_default='0'),
    Column('next_attempt_at', DateTime(timezone=True), nullable=True),
    Column('last_error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Index('idx_webhook_events_status_next', 'status', 'next_attempt_at'),
)

# Rotating refresh tokens
refresh_tokens = Table(
    'refresh_tokens',
    metadata,
    Column('id', String(36), primary_key=True),  # jti
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('token_hash', String(64), nullable=False, unique=True),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('revoked_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
