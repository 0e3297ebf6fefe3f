"""
Database engine and session management.
Uses async SQLAlchemy with asyncpg (PostgreSQL) or aiosqlite (local runs, tests).

Engines are built explicitly at startup and disposed at shutdown; nothing here
holds a process-wide connection.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import CHAR, event
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


# Execution option read by the SQLite "begin" hook; ignored by other dialects.
SQLITE_BEGIN_OPTION = "sqlite_begin"
READ_ONLY_OPTIONS = {SQLITE_BEGIN_OPTION: "DEFERRED"}


class GUID(TypeDecorator):
    """
    Platform-independent GUID type.
    Uses PostgreSQL's UUID type when available, otherwise uses CHAR(32) for SQLite.
    Stores as stringified hex values in SQLite.
    """
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return value
        else:
            if isinstance(value, uuid.UUID):
                return value.hex
            else:
                return uuid.UUID(value).hex

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return value
        else:
            if isinstance(value, uuid.UUID):
                return value
            return uuid.UUID(value)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def build_engine(
    database_url: str,
    echo: bool = False,
    sqlite_busy_timeout: float = 30.0,
) -> AsyncEngine:
    """
    Create the async engine for the configured store.

    SQLite connections take the database write lock when a transaction
    begins (BEGIN IMMEDIATE) so that concurrent writers queue on the busy
    timeout instead of failing on lock upgrade. Connections opened with
    ``READ_ONLY_OPTIONS`` begin deferred and never take the write lock.
    """
    is_sqlite = database_url.startswith("sqlite")
    engine = create_async_engine(
        database_url,
        echo=echo,
        future=True,
        connect_args={"timeout": sqlite_busy_timeout} if is_sqlite else {},
    )

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def _disable_driver_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin(conn):
            mode = conn.get_execution_options().get(SQLITE_BEGIN_OPTION, "IMMEDIATE")
            conn.exec_driver_sql(f"BEGIN {mode}")

    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database tables (for development only)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: datetime) -> datetime:
    """Convert an aware timestamp to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
