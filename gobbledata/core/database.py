"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management (one Database per process)
- Table definitions for profiles, GA4 connections, subscriptions and billing events
- Dialect-aware upsert helpers (INSERT .. ON CONFLICT) for PostgreSQL and SQLite
"""
from typing import Optional, Iterable, Sequence
from contextlib import contextmanager
import logging

from sqlalchemy import (
    create_engine,
    inspect,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Text,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func, true, false

from gobbledata.core.config import settings

logger = logging.getLogger("gobbledata")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def init_engine(database_url: Optional[str] = None) -> Engine:
    """Engine for database_url, falling back to settings.DATABASE_URL.

    In-memory SQLite gets one shared connection so every session sees the
    same tables. PostgreSQL gets a pre-pinged, recycled pool.
    """
    url = database_url or settings.DATABASE_URL

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        if ":memory:" in url:
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30}, echo=False)

    return create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,
    )


class Database:
    """Engine + session factory, constructed once at startup and passed to the stores."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @classmethod
    def from_url(cls, database_url: Optional[str] = None) -> "Database":
        return cls(init_engine(database_url))

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def session(self):
        """
        Context manager for database sessions.

        Usage:
            with database.session() as session:
                session.execute(...)

        Commits on clean exit, rolls back on any exception.
        """
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create all tables defined in metadata (idempotent)."""
        metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """Drop every table. Tests only."""
        metadata.drop_all(bind=self.engine)

    def check_connection(self) -> bool:
        """True if SELECT 1 succeeds; the failure is logged, not raised."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning("database.unreachable", extra={"error_type": type(exc).__name__})
            return False
        return True

    def missing_tables(self, required: Iterable[str]) -> list:
        present = set(inspect(self.engine).get_table_names())
        return [name for name in required if name not in present]


def _dialect_insert(session: Session, table: Table):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect: {dialect}")
    return insert(table)


def upsert(
    session: Session,
    table: Table,
    values: dict,
    *,
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
    keep_existing_when_null: Sequence[str] = (),
) -> None:
    """INSERT .. ON CONFLICT (conflict_columns) DO UPDATE; last writer wins.

    Columns listed in keep_existing_when_null are only overwritten by non-null values.
    """
    stmt = _dialect_insert(session, table).values(**values)
    set_ = {column: stmt.excluded[column] for column in update_columns}
    for column in keep_existing_when_null:
        set_[column] = func.coalesce(stmt.excluded[column], table.c[column])
    stmt = stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=set_)
    session.execute(stmt)


def insert_if_absent(
    session: Session,
    table: Table,
    values: dict,
    *,
    conflict_columns: Sequence[str],
) -> bool:
    """INSERT .. ON CONFLICT DO NOTHING; first creator wins.

    Returns True if this call created the row.
    """
    stmt = _dialect_insert(session, table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    result = session.execute(stmt)
    return bool(result.rowcount)


# User profiles; stripe_customer_id is the cached billing customer reference
user_profiles = Table(
    'user_profiles',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True, index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# GA4 connections (one row per user/property; soft-deleted via is_active)
ga4_connections = Table(
    'ga4_connections',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('external_account_id', String(100), nullable=False),
    Column('external_account_name', String(300), nullable=True),
    Column('access_token', Text, nullable=False),
    Column('refresh_token', Text, nullable=True),
    Column('token_expires_at', DateTime(timezone=True), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('last_synced_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'external_account_id', name='uq_ga4_connections_user_account'),
    Index('idx_ga4_connections_user_active', 'user_id', 'is_active'),
)

# Subscriptions (exactly one per user; status mirrors the processor)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('plan_type', String(50), nullable=False),
    Column('status', String(50), nullable=False),
    Column('billing_customer_id', String(100), nullable=True),
    Column('billing_subscription_id', String(100), nullable=True, index=True),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('trial_end_date', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default=false(), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
)

REQUIRED_TABLES = ["user_profiles", "ga4_connections", "subscriptions", "billing_events"]
