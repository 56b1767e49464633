"""SQLAlchemy database models for the LightNote embedded store."""
import datetime
import logging
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import (JSON, Boolean, Column, DateTime, Index, String, Text,
                        event, select, text)
from sqlalchemy.ext.asyncio import (AsyncConnection, AsyncEngine,
                                    AsyncSession, async_sessionmaker,
                                    create_async_engine)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from lightnote.config import IN_MEMORY_DATABASE, LATEST_SCHEMA_VERSION
from lightnote.exceptions import ConfigurationError
from lightnote.models.schema import (FOLDER_METADATA, NOTE_METADATA,
                                     RECENT_NOTE_METADATA, EntityMetadata)

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()

SCHEMA_VERSION_KEY = "schema_version"
LAST_SYNC_KEY = "last_sync_timestamp"


def single_field_indexes(entity: EntityMetadata) -> tuple:
    """Schema v1 indexes: one per field listed in the entity metadata."""
    return tuple(
        Index(f"ix_{entity.table_name}_{name}", name) for name in entity.indexes
    )


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = NOTE_METADATA.table_name
    __table_args__ = single_field_indexes(NOTE_METADATA)
    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=False)
    title = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    tags = Column(JSON, nullable=False, default=list)
    is_pinned = Column(Boolean, nullable=False, default=False)
    is_shared = Column(Boolean, nullable=True)
    folder_id = Column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBFolder(Base):
    """Database model for a folder."""
    __tablename__ = FOLDER_METADATA.table_name
    __table_args__ = single_field_indexes(FOLDER_METADATA)
    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    color = Column(String(64), nullable=True)
    parent_id = Column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Folder(id='{self.id}', name='{self.name}')>"


class DBRecentNote(Base):
    """Database model for a recently viewed note, keyed by (note id, user)."""
    __tablename__ = RECENT_NOTE_METADATA.table_name
    __table_args__ = single_field_indexes(RECENT_NOTE_METADATA)
    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), primary_key=True)
    title = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<RecentNote(id='{self.id}', user_id='{self.user_id}')>"


class DBMetadata(Base):
    """Key/value store for schema version and sync bookkeeping."""
    __tablename__ = "metadata"
    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=True)


# Composite indexes introduced by schema v2
_V2_INDEX_STMTS = [
    "CREATE INDEX IF NOT EXISTS ix_notes_user_folder ON notes (user_id, folder_id)",
    "CREATE INDEX IF NOT EXISTS ix_folders_user_parent ON folders (user_id, parent_id)",
    "CREATE INDEX IF NOT EXISTS ix_recent_notes_user_timestamp "
    "ON recent_notes (user_id, timestamp)",
]


def to_storage_datetime(value: datetime.datetime) -> datetime.datetime:
    """Normalise a datetime to naive UTC for SQLite storage."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


def create_engine_for(database: Union[str, Path]) -> AsyncEngine:
    """Create an async SQLite engine with hardened connection settings.

    Every new DBAPI connection gets:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode
    - a busy timeout so competing writers wait instead of failing

    Args:
        database: Path to the database file, or ":memory:".
    """
    if str(database) == IN_MEMORY_DATABASE:
        # A single shared connection keeps the in-memory database alive
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:", poolclass=StaticPool
        )
    else:
        engine = create_async_engine(f"sqlite+aiosqlite:///{database}")

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to ``engine``."""
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False
    )


async def get_stored_schema_version(conn: AsyncConnection) -> Optional[int]:
    """Read the schema version recorded in the metadata table, if any."""
    result = await conn.execute(
        select(DBMetadata.value).where(DBMetadata.key == SCHEMA_VERSION_KEY)
    )
    value = result.scalar_one_or_none()
    return int(value) if value is not None else None


async def _set_metadata(conn: AsyncConnection, key: str, value: str) -> None:
    await conn.execute(
        text(
            "INSERT INTO metadata (key, value) VALUES (:key, :value) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value"
        ),
        {"key": key, "value": value},
    )


async def _migrate_add_composite_indexes(conn: AsyncConnection) -> None:
    """Migration v1 -> v2: add the composite per-user indexes.

    Purely additive and idempotent; existing rows are untouched.
    """
    for stmt in _V2_INDEX_STMTS:
        await conn.execute(text(stmt))


async def init_db(
    engine: AsyncEngine,
    version: int = LATEST_SCHEMA_VERSION,
    provider: Optional[str] = None,
) -> int:
    """Create tables and bring the schema up to ``version``.

    Args:
        engine: Engine to initialise.
        version: Requested schema generation.
        provider: Provider identity used in error reports.

    Returns:
        The schema version now recorded in the store.

    Raises:
        ConfigurationError: If the store already holds a newer schema, or the
            requested version is unknown.
    """
    if version < 1 or version > LATEST_SCHEMA_VERSION:
        raise ConfigurationError(
            f"Unsupported schema version {version}",
            provider,
            errors=[f"version must be between 1 and {LATEST_SCHEMA_VERSION}"],
            context={"operation": "initialize"},
        )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        stored = await get_stored_schema_version(conn)
        if stored is not None and version < stored:
            raise ConfigurationError(
                f"Database schema is at version {stored}; "
                f"cannot open it with version {version}",
                provider,
                errors=["schema versions never decrease"],
                context={"operation": "initialize"},
            )

        if version >= 2:
            await _migrate_add_composite_indexes(conn)

        if stored != version:
            await _set_metadata(conn, SCHEMA_VERSION_KEY, str(version))
            logger.info("Database schema upgraded from %s to %d", stored, version)

    return version


async def get_metadata_value(session: AsyncSession, key: str) -> Optional[str]:
    row = await session.get(DBMetadata, key)
    return row.value if row is not None else None


async def set_metadata_value(session: AsyncSession, key: str, value: str) -> None:
    row = await session.get(DBMetadata, key)
    if row is None:
        session.add(DBMetadata(key=key, value=value))
    else:
        row.value = value
