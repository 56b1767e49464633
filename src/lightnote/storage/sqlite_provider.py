"""Embedded SQLite provider built on SQLAlchemy's asyncio extension."""
import asyncio
import datetime
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import (Any, AsyncIterator, Awaitable, Callable, Dict, Iterator,
                    List, Optional, Sequence, Set, Tuple, TypeVar, Union)

from sqlalchemy import delete, func, literal_column, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lightnote.config import (DEFAULT_DATABASE_NAME, IN_MEMORY_DATABASE,
                              LATEST_SCHEMA_VERSION, DatabaseConfig,
                              LightNoteConfig, ProviderKind, ProviderOptions,
                              config)
from lightnote.exceptions import (ConflictError, DatabaseError, ErrorCode,
                                  ErrorSeverity,
                                  NotFoundError, ProviderConnectionError,
                                  TransactionError, ValidationError,
                                  classify_storage_error)
from lightnote.models.db_models import (LAST_SYNC_KEY, DBFolder, DBNote,
                                        DBRecentNote, create_engine_for,
                                        get_metadata_value,
                                        get_session_factory, init_db,
                                        set_metadata_value,
                                        to_storage_datetime)
from lightnote.models.schema import (Folder, FolderCreate, FolderUpdate, Note,
                                     NoteCreate, NoteUpdate, RecentNote,
                                     ensure_timezone_aware, generate_id,
                                     utc_now)
from lightnote.observability import MetricsCollector, metrics, traced
from lightnote.storage.base import (BackupData, BackupMetadata,
                                    DatabaseBackup, DatabaseProvider,
                                    FolderCreateInput, FolderFiltersInput,
                                    FolderUpdateInput, ImportResult,
                                    NoteCreateInput, NoteFiltersInput,
                                    NoteUpdateInput, ProviderCapabilities,
                                    ProviderInfo, ProviderStatus, SyncResult,
                                    TableName, TransactionContext)
from lightnote.storage.events import (ChangeEvent, ChangeEventEmitter,
                                      ChangeListener, ChangeType,
                                      DatabaseTable, EventSubscriptionOptions)
from lightnote.storage.filters import (RECENT_NOTES_LIMIT, FolderFilters,
                                       NoteFilters, QueryResult,
                                       RecentNotesFilters, coerce_filters,
                                       filter_folders, filter_notes,
                                       filter_recent_notes, validate_input)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROVIDER_VERSION = "1.0.0"
BACKUP_FORMAT_VERSION = "1.0.0"
DEFAULT_SEARCH_LIMIT = 50

SQLITE_CAPABILITIES = ProviderCapabilities(
    supports_realtime=True,
    supports_bulk_operations=True,
    supports_transactions=True,
    supports_full_text_search=False,
    supports_relations=False,
    supports_indexes=True,
    supports_backup=True,
    supports_encryption=False,
    max_concurrent_connections=1,
    max_record_size=10 * 1024 * 1024,
)


# Row <-> model conversion

def _note_from_row(row: DBNote) -> Note:
    return Note(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        content=row.content,
        created_at=ensure_timezone_aware(row.created_at),
        updated_at=ensure_timezone_aware(row.updated_at),
        tags=list(row.tags or []),
        is_pinned=bool(row.is_pinned),
        is_shared=row.is_shared,
        folder_id=row.folder_id,
    )


def _folder_from_row(row: DBFolder) -> Folder:
    return Folder(
        id=row.id,
        name=row.name,
        user_id=row.user_id,
        created_at=ensure_timezone_aware(row.created_at),
        updated_at=ensure_timezone_aware(row.updated_at),
        color=row.color,
        parent_id=row.parent_id,
    )


def _recent_from_row(row: DBRecentNote) -> RecentNote:
    return RecentNote(
        id=row.id,
        title=row.title,
        user_id=row.user_id,
        timestamp=ensure_timezone_aware(row.timestamp),
    )


def _row_from_note(note: Note) -> DBNote:
    return DBNote(
        id=note.id,
        user_id=note.user_id,
        title=note.title,
        content=note.content,
        created_at=to_storage_datetime(note.created_at),
        updated_at=to_storage_datetime(note.updated_at),
        tags=list(note.tags),
        is_pinned=note.is_pinned,
        is_shared=note.is_shared,
        folder_id=note.folder_id,
    )


def _row_from_folder(folder: Folder) -> DBFolder:
    return DBFolder(
        id=folder.id,
        name=folder.name,
        user_id=folder.user_id,
        created_at=to_storage_datetime(folder.created_at),
        updated_at=to_storage_datetime(folder.updated_at),
        color=folder.color,
        parent_id=folder.parent_id,
    )


def _refreshed_timestamp(previous: datetime.datetime) -> datetime.datetime:
    """Current time, never earlier than ``previous``."""
    return max(utc_now(), ensure_timezone_aware(previous))


# Session-level write helpers shared by the provider and its transactions

async def _insert_note(session: AsyncSession, data: NoteCreate,
                       now: Optional[datetime.datetime] = None) -> Note:
    now = now or utc_now()
    note = Note(id=generate_id(), created_at=now, updated_at=now, **data.model_dump())
    session.add(_row_from_note(note))
    await session.flush()
    return note


async def _update_note(session: AsyncSession, provider: str, note_id: str,
                       patch: NoteUpdate) -> Tuple[Note, Note]:
    row = await session.get(DBNote, note_id)
    if row is None:
        raise NotFoundError("Note", note_id, provider,
                            context={"operation": "update_note", "table": "notes"})
    previous = _note_from_row(row)
    for key, value in patch.model_dump(exclude_unset=True).items():
        setattr(row, key, list(value) if key == "tags" else value)
    row.updated_at = to_storage_datetime(_refreshed_timestamp(previous.updated_at))
    await session.flush()
    return previous, _note_from_row(row)


async def _delete_note(session: AsyncSession, provider: str, note_id: str,
                       prune_recent: bool = False) -> Note:
    row = await session.get(DBNote, note_id)
    if row is None:
        raise NotFoundError("Note", note_id, provider,
                            context={"operation": "delete_note", "table": "notes"})
    snapshot = _note_from_row(row)
    await session.delete(row)
    if prune_recent:
        await session.execute(delete(DBRecentNote).where(DBRecentNote.id == note_id))
    await session.flush()
    return snapshot


async def _insert_folder(session: AsyncSession, data: FolderCreate,
                         now: Optional[datetime.datetime] = None) -> Folder:
    now = now or utc_now()
    folder = Folder(id=generate_id(), created_at=now, updated_at=now, **data.model_dump())
    session.add(_row_from_folder(folder))
    await session.flush()
    return folder


async def _check_parent_cycle(session: AsyncSession, provider: str,
                              folder_id: str, parent_id: str) -> None:
    """Reject re-parenting ``folder_id`` under itself or a descendant."""
    seen: Set[str] = set()
    current: Optional[str] = parent_id
    while current is not None and current not in seen:
        if current == folder_id:
            raise ValidationError(
                f"Folder '{folder_id}' cannot be nested under itself or a descendant",
                provider,
                field="parent_id",
                context={"operation": "update_folder", "table": "folders",
                         "record_id": folder_id},
            )
        seen.add(current)
        current = await session.scalar(
            select(DBFolder.parent_id).where(DBFolder.id == current)
        )


async def _update_folder(session: AsyncSession, provider: str, folder_id: str,
                         patch: FolderUpdate) -> Tuple[Folder, Folder]:
    row = await session.get(DBFolder, folder_id)
    if row is None:
        raise NotFoundError("Folder", folder_id, provider,
                            context={"operation": "update_folder", "table": "folders"})
    changes = patch.model_dump(exclude_unset=True)
    if changes.get("parent_id") is not None:
        await _check_parent_cycle(session, provider, folder_id, changes["parent_id"])
    previous = _folder_from_row(row)
    for key, value in changes.items():
        setattr(row, key, value)
    row.updated_at = to_storage_datetime(_refreshed_timestamp(previous.updated_at))
    await session.flush()
    return previous, _folder_from_row(row)


async def _delete_folder(session: AsyncSession, provider: str, folder_id: str) -> Folder:
    row = await session.get(DBFolder, folder_id)
    if row is None:
        raise NotFoundError("Folder", folder_id, provider,
                            context={"operation": "delete_folder", "table": "folders"})

    child_folders = await session.scalar(
        select(func.count()).select_from(DBFolder).where(DBFolder.parent_id == folder_id)
    )
    contained_notes = await session.scalar(
        select(func.count()).select_from(DBNote).where(DBNote.folder_id == folder_id)
    )
    if child_folders or contained_notes:
        raise ConflictError(
            "Cannot delete folder with children or notes",
            provider,
            context={
                "operation": "delete_folder",
                "table": "folders",
                "record_id": folder_id,
                "additional_info": {
                    "child_folders": child_folders,
                    "notes": contained_notes,
                },
            },
        )

    snapshot = _folder_from_row(row)
    await session.delete(row)
    await session.flush()
    return snapshot


async def _trim_recent_notes(session: AsyncSession, user_id: str) -> int:
    """Drop everything but the newest entries for ``user_id``."""
    stale = (await session.execute(
        select(DBRecentNote.id)
        .where(DBRecentNote.user_id == user_id)
        .order_by(DBRecentNote.timestamp.desc(),
                  literal_column("recent_notes.rowid").desc())
        .offset(RECENT_NOTES_LIMIT)
    )).scalars().all()
    if stale:
        await session.execute(
            delete(DBRecentNote).where(
                DBRecentNote.user_id == user_id, DBRecentNote.id.in_(stale)
            )
        )
    return len(stale)


def _common_user(records: Sequence[Union[Note, Folder]]) -> Optional[str]:
    users = {r.user_id for r in records}
    return users.pop() if len(users) == 1 else None


class SQLiteTransactionContext(TransactionContext):
    """Transaction scope bound to one session.

    Change events are queued here and emitted by the provider only after the
    surrounding transaction commits.
    """

    def __init__(self, provider: "SQLiteProvider", session: AsyncSession):
        self._provider = provider
        self._session = session
        self.pending_events: List[ChangeEvent] = []

    async def create_note(self, note: NoteCreateInput) -> Note:
        data = self._provider._validate_note_create(note, "transaction.create_note")
        created = await _insert_note(self._session, data)
        self.pending_events.append(self._provider._event(
            ChangeType.CREATE, DatabaseTable.NOTES, created, user_id=created.user_id))
        return created

    async def update_note(self, note_id: str, updates: NoteUpdateInput) -> Note:
        patch = self._provider._coerce(NoteUpdate, updates, "transaction.update_note")
        previous, updated = await _update_note(
            self._session, self._provider.name, note_id, patch)
        self.pending_events.append(self._provider._event(
            ChangeType.UPDATE, DatabaseTable.NOTES, updated, previous,
            user_id=updated.user_id))
        return updated

    async def delete_note(self, note_id: str) -> None:
        deleted = await _delete_note(
            self._session, self._provider.name, note_id,
            self._provider.prune_recent_notes)
        self.pending_events.append(self._provider._event(
            ChangeType.DELETE, DatabaseTable.NOTES, deleted, user_id=deleted.user_id))

    async def create_folder(self, folder: FolderCreateInput) -> Folder:
        data = self._provider._validate_folder_create(folder, "transaction.create_folder")
        created = await _insert_folder(self._session, data)
        self.pending_events.append(self._provider._event(
            ChangeType.CREATE, DatabaseTable.FOLDERS, created, user_id=created.user_id))
        return created

    async def update_folder(self, folder_id: str, updates: FolderUpdateInput) -> Folder:
        patch = self._provider._coerce(FolderUpdate, updates, "transaction.update_folder")
        previous, updated = await _update_folder(
            self._session, self._provider.name, folder_id, patch)
        self.pending_events.append(self._provider._event(
            ChangeType.UPDATE, DatabaseTable.FOLDERS, updated, previous,
            user_id=updated.user_id))
        return updated

    async def delete_folder(self, folder_id: str) -> None:
        deleted = await _delete_folder(self._session, self._provider.name, folder_id)
        self.pending_events.append(self._provider._event(
            ChangeType.DELETE, DatabaseTable.FOLDERS, deleted, user_id=deleted.user_id))

    async def rollback(self) -> None:
        raise TransactionError(
            "Manual rollback not supported; raise inside the transaction to abort",
            self._provider.name,
            context={"operation": "rollback"},
            is_retryable=False,
        )

    async def commit(self) -> None:
        return None


class SQLiteProvider(DatabaseProvider):
    """Local embedded provider storing everything in one SQLite file.

    Every mutation runs in its own transaction; reads fetch candidate rows
    with indexed SQL lookups and hand them to the shared filter engine.
    """

    name = ProviderKind.SQLITE.value
    CAPABILITIES = SQLITE_CAPABILITIES

    def __init__(
        self,
        options: Optional[ProviderOptions] = None,
        settings: Optional[LightNoteConfig] = None,
        emitter: Optional[ChangeEventEmitter] = None,
        collector: Optional[MetricsCollector] = None,
    ):
        """Build an unopened provider; call ``initialize()`` before use.

        Args:
            options: Provider options (database name, schema version, ...).
            settings: Process settings used to resolve the data directory.
            emitter: Change event emitter; a private one by default.
            collector: Metrics sink; the global collector by default.
        """
        options = options or ProviderOptions()
        self.settings = settings or config
        self.database_name = options.database_name or DEFAULT_DATABASE_NAME
        self.schema_version = options.version or LATEST_SCHEMA_VERSION
        self.prune_recent_notes = options.prune_recent_notes
        self.data_dir = options.data_dir

        resolved = options.model_copy(update={
            "database_name": self.database_name,
            "version": self.schema_version,
            "enable_sync": False if options.enable_sync is None else options.enable_sync,
            "enable_cache": True if options.enable_cache is None else options.enable_cache,
            "enable_logging": bool(options.enable_logging),
        })
        self.config = DatabaseConfig(provider=self.name, options=resolved)

        self.events = emitter or ChangeEventEmitter()
        self.metrics = collector or metrics
        self.engine = None
        self.session_factory = None
        self._status = ProviderStatus.INITIALIZING
        self._connected_at: Optional[datetime.datetime] = None
        self._last_sync: Optional[datetime.datetime] = None
        self._error_message: Optional[str] = None
        # ":memory:" runs every session on one shared connection
        self._connection_lock = (
            asyncio.Lock() if self.database_name == IN_MEMORY_DATABASE else None
        )

    @property
    def database_path(self) -> Union[str, Path]:
        if self.database_name == IN_MEMORY_DATABASE:
            return IN_MEMORY_DATABASE
        return self.settings.get_database_path(self.database_name, self.data_dir)

    # Lifecycle

    async def initialize(self) -> None:
        if self.is_connected():
            return
        self._status = ProviderStatus.INITIALIZING
        try:
            self.engine = create_engine_for(self.database_path)
            await init_db(self.engine, self.schema_version, self.name)
            self.session_factory = get_session_factory(self.engine)
        except Exception as e:
            self._status = ProviderStatus.ERROR
            self._error_message = str(e)
            await self._dispose_engine()
            if isinstance(e, DatabaseError):
                raise
            raise ProviderConnectionError(
                f"Failed to open database '{self.database_name}'",
                self.name,
                original_error=e,
                context={"operation": "initialize"},
                severity=ErrorSeverity.CRITICAL,
            ) from e

        self._status = ProviderStatus.CONNECTED
        self._connected_at = utc_now()
        self._error_message = None
        logger.info(
            "SQLite provider connected: %s (schema v%d)",
            self.database_path, self.schema_version,
        )

    async def close(self) -> None:
        await self._dispose_engine()
        self.events.clear()
        self._status = ProviderStatus.DISCONNECTED
        self._connected_at = None
        logger.info("SQLite provider closed: %s", self.database_name)

    async def _dispose_engine(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.session_factory = None

    def is_connected(self) -> bool:
        return self._status == ProviderStatus.CONNECTED and self.engine is not None

    async def ping(self) -> bool:
        if not self.is_connected():
            return False
        try:
            async with self._exclusive(), self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning("Ping failed for %s: %s", self.database_name, e)
            return False

    def get_status(self) -> ProviderStatus:
        return self._status

    def get_info(self) -> ProviderInfo:
        return ProviderInfo(
            name=self.name,
            version=PROVIDER_VERSION,
            status=self._status,
            capabilities=self.CAPABILITIES.model_copy(),
            config=self.config.model_copy(deep=True),
            connected_at=self._connected_at,
            last_sync=self._last_sync,
            error_message=self._error_message,
        )

    # Internal helpers

    def _ensure_connected(self, operation: str) -> None:
        if not self.is_connected():
            raise ProviderConnectionError(
                "Database not initialized",
                self.name,
                context={"operation": operation},
            )

    @contextmanager
    def _classified(self, operation: str, table: Optional[str] = None,
                    record_id: Optional[str] = None) -> Iterator[None]:
        """Translate storage failures into the error taxonomy."""
        try:
            yield
        except DatabaseError:
            raise
        except Exception as e:
            error = classify_storage_error(e, self.name, operation, table, record_id)
            logger.error("%s failed: %s", operation, e)
            raise error from e

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        """Hold the shared in-memory connection; a no-op for file databases."""
        if self._connection_lock is None:
            yield
            return
        async with self._connection_lock:
            yield

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._exclusive():
            async with self.session_factory() as session:
                yield session

    def _coerce(self, model: type, value: Any, operation: str) -> Any:
        if isinstance(value, model):
            return value
        if isinstance(value, dict):
            return validate_input(model, value, operation, self.name)
        raise ValidationError(
            f"Expected {model.__name__} or dict, got {type(value).__name__}",
            self.name,
            context={"operation": operation},
        )

    def _validate_note_create(self, note: NoteCreateInput, operation: str) -> NoteCreate:
        data = self._coerce(NoteCreate, note, operation)
        if data.is_empty():
            raise ValidationError(
                "Note must have a title or content",
                self.name,
                field="title",
                context={"operation": operation, "table": "notes"},
            )
        return data

    def _validate_folder_create(self, folder: FolderCreateInput, operation: str) -> FolderCreate:
        data = self._coerce(FolderCreate, folder, operation)
        if not data.name.strip():
            raise ValidationError(
                "Folder name cannot be empty",
                self.name,
                field="name",
                context={"operation": operation, "table": "folders"},
            )
        return data

    def _event(self, change: ChangeType, table: DatabaseTable, data: Any,
               previous: Any = None, affected_ids: Optional[List[str]] = None,
               user_id: Optional[str] = None) -> ChangeEvent:
        if affected_ids is None:
            affected_ids = [r.id for r in data] if isinstance(data, list) else [data.id]
        return ChangeEvent(
            type=change,
            table=table,
            data=_snapshot(data),
            previous_data=_snapshot(previous),
            affected_ids=affected_ids,
            user_id=user_id,
        )

    def _emit(self, *args: Any, **kwargs: Any) -> None:
        self.events.emit(self._event(*args, **kwargs))

    async def _run_write(self, operation: str, table: Optional[str],
                         work: Callable[[AsyncSession], Awaitable[T]],
                         record_id: Optional[str] = None) -> T:
        """Run ``work`` inside one committed transaction."""
        with self._classified(operation, table, record_id):
            async with self._session() as session:
                async with session.begin():
                    return await work(session)

    # Notes

    @traced("create_note")
    async def create_note(self, note: NoteCreateInput) -> Note:
        self._ensure_connected("create_note")
        data = self._validate_note_create(note, "create_note")
        created = await self._run_write(
            "create_note", "notes", lambda s: _insert_note(s, data))
        self._emit(ChangeType.CREATE, DatabaseTable.NOTES, created, user_id=created.user_id)
        return created

    @traced("get_note")
    async def get_note(self, note_id: str) -> Optional[Note]:
        self._ensure_connected("get_note")
        with self._classified("get_note", "notes", note_id):
            async with self._session() as session:
                row = await session.get(DBNote, note_id)
                return _note_from_row(row) if row is not None else None

    @traced("get_notes_with_metadata")
    async def get_notes_with_metadata(
        self, filters: NoteFiltersInput = None
    ) -> QueryResult[Note]:
        started = time.perf_counter()
        self._ensure_connected("get_notes")
        filters = coerce_filters(NoteFilters, filters, "get_notes")

        stmt = select(DBNote)
        if filters.user_id is not None:
            stmt = stmt.where(DBNote.user_id == filters.user_id)
        if filters.is_explicit("folder_id"):
            if filters.folder_id is None:
                stmt = stmt.where(DBNote.folder_id.is_(None))
            else:
                stmt = stmt.where(DBNote.folder_id == filters.folder_id)
        if filters.is_pinned is not None:
            stmt = stmt.where(DBNote.is_pinned == filters.is_pinned)
        stmt = stmt.order_by(literal_column("notes.rowid"))

        with self._classified("get_notes", "notes"):
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                notes = [_note_from_row(row) for row in rows]
        return filter_notes(notes, filters, started)

    @traced("update_note")
    async def update_note(self, note_id: str, updates: NoteUpdateInput) -> Note:
        self._ensure_connected("update_note")
        patch = self._coerce(NoteUpdate, updates, "update_note")
        previous, updated = await self._run_write(
            "update_note", "notes",
            lambda s: _update_note(s, self.name, note_id, patch), note_id)
        self._emit(ChangeType.UPDATE, DatabaseTable.NOTES, updated, previous,
                   user_id=updated.user_id)
        return updated

    @traced("delete_note")
    async def delete_note(self, note_id: str) -> None:
        self._ensure_connected("delete_note")
        deleted = await self._run_write(
            "delete_note", "notes",
            lambda s: _delete_note(s, self.name, note_id, self.prune_recent_notes),
            note_id)
        self._emit(ChangeType.DELETE, DatabaseTable.NOTES, deleted, user_id=deleted.user_id)

    # Folders

    @traced("create_folder")
    async def create_folder(self, folder: FolderCreateInput) -> Folder:
        self._ensure_connected("create_folder")
        data = self._validate_folder_create(folder, "create_folder")
        created = await self._run_write(
            "create_folder", "folders", lambda s: _insert_folder(s, data))
        self._emit(ChangeType.CREATE, DatabaseTable.FOLDERS, created, user_id=created.user_id)
        return created

    @traced("get_folder")
    async def get_folder(self, folder_id: str) -> Optional[Folder]:
        self._ensure_connected("get_folder")
        with self._classified("get_folder", "folders", folder_id):
            async with self._session() as session:
                row = await session.get(DBFolder, folder_id)
                return _folder_from_row(row) if row is not None else None

    @traced("get_folders_with_metadata")
    async def get_folders_with_metadata(
        self, filters: FolderFiltersInput = None
    ) -> QueryResult[Folder]:
        started = time.perf_counter()
        self._ensure_connected("get_folders")
        filters = coerce_filters(FolderFilters, filters, "get_folders")

        stmt = select(DBFolder)
        if filters.user_id is not None:
            stmt = stmt.where(DBFolder.user_id == filters.user_id)
        if filters.is_explicit("parent_id"):
            if filters.parent_id is None:
                stmt = stmt.where(DBFolder.parent_id.is_(None))
            else:
                stmt = stmt.where(DBFolder.parent_id == filters.parent_id)
        stmt = stmt.order_by(literal_column("folders.rowid"))

        parent_ids: Optional[Set[str]] = None
        with self._classified("get_folders", "folders"):
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                folders = [_folder_from_row(row) for row in rows]
                if filters.has_children is not None:
                    parent_ids = set((await session.execute(
                        select(DBFolder.parent_id)
                        .where(DBFolder.parent_id.is_not(None))
                        .distinct()
                    )).scalars().all())
        return filter_folders(folders, filters, parent_ids, started)

    @traced("update_folder")
    async def update_folder(self, folder_id: str, updates: FolderUpdateInput) -> Folder:
        self._ensure_connected("update_folder")
        patch = self._coerce(FolderUpdate, updates, "update_folder")
        previous, updated = await self._run_write(
            "update_folder", "folders",
            lambda s: _update_folder(s, self.name, folder_id, patch), folder_id)
        self._emit(ChangeType.UPDATE, DatabaseTable.FOLDERS, updated, previous,
                   user_id=updated.user_id)
        return updated

    @traced("delete_folder")
    async def delete_folder(self, folder_id: str) -> None:
        self._ensure_connected("delete_folder")
        deleted = await self._run_write(
            "delete_folder", "folders",
            lambda s: _delete_folder(s, self.name, folder_id), folder_id)
        self._emit(ChangeType.DELETE, DatabaseTable.FOLDERS, deleted,
                   user_id=deleted.user_id)

    # Recent notes

    @traced("add_recent_note")
    async def add_recent_note(self, note: Note, user_id: str) -> None:
        """Put ``note`` at the head of ``user_id``'s recent list.

        Any previous entry for the same note is replaced and the list is
        trimmed to the 10 most recent entries.
        """
        self._ensure_connected("add_recent_note")

        async def work(session: AsyncSession) -> None:
            await session.execute(
                delete(DBRecentNote).where(
                    DBRecentNote.id == note.id, DBRecentNote.user_id == user_id
                )
            )
            session.add(DBRecentNote(
                id=note.id,
                user_id=user_id,
                title=note.title,
                timestamp=to_storage_datetime(utc_now()),
            ))
            await session.flush()
            await _trim_recent_notes(session, user_id)

        await self._run_write("add_recent_note", "recent_notes", work, note.id)

    async def get_recent_notes(self, user_id: str, limit: int = RECENT_NOTES_LIMIT) -> List[RecentNote]:
        result = await self.get_recent_notes_with_metadata(
            RecentNotesFilters(user_id=user_id, limit=limit)
        )
        return result.data

    @traced("get_recent_notes_with_metadata")
    async def get_recent_notes_with_metadata(
        self, filters: Union[RecentNotesFilters, Dict[str, Any], None] = None
    ) -> QueryResult[RecentNote]:
        started = time.perf_counter()
        self._ensure_connected("get_recent_notes")
        filters = coerce_filters(RecentNotesFilters, filters, "get_recent_notes")

        stmt = select(DBRecentNote)
        if filters.user_id is not None:
            stmt = stmt.where(DBRecentNote.user_id == filters.user_id)
        # Newest insertion first so equal timestamps stay most-recent-first
        stmt = stmt.order_by(literal_column("recent_notes.rowid").desc())

        with self._classified("get_recent_notes", "recent_notes"):
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                recent = [_recent_from_row(row) for row in rows]
        return filter_recent_notes(recent, filters, started)

    @traced("clear_recent_notes")
    async def clear_recent_notes(self, user_id: str) -> None:
        self._ensure_connected("clear_recent_notes")

        async def work(session: AsyncSession) -> None:
            await session.execute(
                delete(DBRecentNote).where(DBRecentNote.user_id == user_id)
            )

        await self._run_write("clear_recent_notes", "recent_notes", work)

    # Bulk operations

    @traced("bulk_create_notes")
    async def bulk_create_notes(self, notes: Sequence[NoteCreateInput]) -> List[Note]:
        self._ensure_connected("bulk_create_notes")
        inputs = [self._validate_note_create(n, "bulk_create_notes") for n in notes]
        if not inputs:
            return []

        async def work(session: AsyncSession) -> List[Note]:
            now = utc_now()
            return [await _insert_note(session, data, now) for data in inputs]

        created = await self._run_write("bulk_create_notes", "notes", work)
        self._emit(ChangeType.BULK_CREATE, DatabaseTable.NOTES, created,
                   user_id=_common_user(created))
        return created

    @traced("bulk_update_notes")
    async def bulk_update_notes(
        self, updates: Sequence[Tuple[str, NoteUpdateInput]]
    ) -> List[Note]:
        self._ensure_connected("bulk_update_notes")
        patches = [
            (note_id, self._coerce(NoteUpdate, patch, "bulk_update_notes"))
            for note_id, patch in updates
        ]

        async def work(session: AsyncSession) -> Tuple[List[Note], List[Note]]:
            before: List[Note] = []
            after: List[Note] = []
            for note_id, patch in patches:
                try:
                    previous, updated = await _update_note(session, self.name, note_id, patch)
                except NotFoundError:
                    logger.debug("bulk_update_notes: skipping missing note %s", note_id)
                    continue
                before.append(previous)
                after.append(updated)
            return before, after

        before, after = await self._run_write("bulk_update_notes", "notes", work)
        if after:
            self._emit(ChangeType.BULK_UPDATE, DatabaseTable.NOTES, after, before,
                       user_id=_common_user(after))
        return after

    @traced("bulk_delete_notes")
    async def bulk_delete_notes(self, note_ids: Sequence[str]) -> None:
        self._ensure_connected("bulk_delete_notes")
        ids = list(dict.fromkeys(note_ids))
        if not ids:
            return

        async def work(session: AsyncSession) -> List[Note]:
            rows = (await session.execute(
                select(DBNote).where(DBNote.id.in_(ids))
            )).scalars().all()
            snapshots = [_note_from_row(row) for row in rows]
            await session.execute(delete(DBNote).where(DBNote.id.in_(ids)))
            if self.prune_recent_notes:
                await session.execute(delete(DBRecentNote).where(DBRecentNote.id.in_(ids)))
            return snapshots

        deleted = await self._run_write("bulk_delete_notes", "notes", work)
        if deleted:
            self._emit(ChangeType.BULK_DELETE, DatabaseTable.NOTES, deleted,
                       user_id=_common_user(deleted))

    @traced("bulk_create_folders")
    async def bulk_create_folders(self, folders: Sequence[FolderCreateInput]) -> List[Folder]:
        self._ensure_connected("bulk_create_folders")
        inputs = [self._validate_folder_create(f, "bulk_create_folders") for f in folders]
        if not inputs:
            return []

        async def work(session: AsyncSession) -> List[Folder]:
            now = utc_now()
            return [await _insert_folder(session, data, now) for data in inputs]

        created = await self._run_write("bulk_create_folders", "folders", work)
        self._emit(ChangeType.BULK_CREATE, DatabaseTable.FOLDERS, created,
                   user_id=_common_user(created))
        return created

    @traced("bulk_update_folders")
    async def bulk_update_folders(
        self, updates: Sequence[Tuple[str, FolderUpdateInput]]
    ) -> List[Folder]:
        self._ensure_connected("bulk_update_folders")
        patches = [
            (folder_id, self._coerce(FolderUpdate, patch, "bulk_update_folders"))
            for folder_id, patch in updates
        ]

        async def work(session: AsyncSession) -> Tuple[List[Folder], List[Folder]]:
            before: List[Folder] = []
            after: List[Folder] = []
            for folder_id, patch in patches:
                try:
                    previous, updated = await _update_folder(
                        session, self.name, folder_id, patch)
                except NotFoundError:
                    logger.debug("bulk_update_folders: skipping missing folder %s", folder_id)
                    continue
                before.append(previous)
                after.append(updated)
            return before, after

        before, after = await self._run_write("bulk_update_folders", "folders", work)
        if after:
            self._emit(ChangeType.BULK_UPDATE, DatabaseTable.FOLDERS, after, before,
                       user_id=_common_user(after))
        return after

    @traced("bulk_delete_folders")
    async def bulk_delete_folders(self, folder_ids: Sequence[str]) -> None:
        """Delete several folders at once.

        The batch is rejected as a whole if any folder still has notes, or
        sub-folders that are not themselves part of the batch.
        """
        self._ensure_connected("bulk_delete_folders")
        ids = list(dict.fromkeys(folder_ids))
        if not ids:
            return

        async def work(session: AsyncSession) -> List[Folder]:
            outside_children = (await session.execute(
                select(DBFolder.id).where(
                    DBFolder.parent_id.in_(ids), DBFolder.id.not_in(ids)
                )
            )).scalars().all()
            contained_notes = await session.scalar(
                select(func.count()).select_from(DBNote).where(DBNote.folder_id.in_(ids))
            )
            if outside_children or contained_notes:
                raise ConflictError(
                    "Cannot delete folders with children or notes",
                    self.name,
                    context={
                        "operation": "bulk_delete_folders",
                        "table": "folders",
                        "additional_info": {
                            "child_folders": list(outside_children),
                            "notes": contained_notes,
                        },
                    },
                )
            rows = (await session.execute(
                select(DBFolder).where(DBFolder.id.in_(ids))
            )).scalars().all()
            snapshots = [_folder_from_row(row) for row in rows]
            await session.execute(delete(DBFolder).where(DBFolder.id.in_(ids)))
            return snapshots

        deleted = await self._run_write("bulk_delete_folders", "folders", work)
        if deleted:
            self._emit(ChangeType.BULK_DELETE, DatabaseTable.FOLDERS, deleted,
                       user_id=_common_user(deleted))

    # Utility

    def _table(self, table: TableName, operation: str) -> DatabaseTable:
        try:
            resolved = DatabaseTable(table)
        except ValueError:
            resolved = None
        if resolved not in (DatabaseTable.NOTES, DatabaseTable.FOLDERS):
            raise ValidationError(
                f"Unsupported table '{table}'",
                self.name,
                field="table",
                context={"operation": operation},
            )
        return resolved

    async def count(
        self, table: TableName,
        filters: Union[NoteFiltersInput, FolderFiltersInput] = None,
    ) -> int:
        """Number of records matching ``filters``, ignoring pagination."""
        if self._table(table, "count") == DatabaseTable.NOTES:
            result = await self.get_notes_with_metadata(filters)
        else:
            result = await self.get_folders_with_metadata(filters)
        return result.metadata.total_count

    @traced("exists")
    async def exists(self, table: TableName, record_id: str) -> bool:
        self._ensure_connected("exists")
        model = DBNote if self._table(table, "exists") == DatabaseTable.NOTES else DBFolder
        with self._classified("exists", str(table), record_id):
            async with self._session() as session:
                return await session.get(model, record_id) is not None

    async def search_notes(
        self, query: str, user_id: str, limit: Optional[int] = DEFAULT_SEARCH_LIMIT
    ) -> List[Note]:
        """Case-insensitive substring search over title, content and tags."""
        return await self.get_notes(
            NoteFilters(user_id=user_id, search_query=query, limit=limit)
        )

    @traced("transaction")
    async def transaction(
        self, callback: Callable[[TransactionContext], Awaitable[T]]
    ) -> T:
        """Run ``callback`` in one atomic unit of work.

        If the callback raises, nothing it did is committed and no change
        events are emitted. Events are delivered only after commit.
        The callback must go through the context it is given; with an
        in-memory database other provider calls wait until it finishes.
        """
        self._ensure_connected("transaction")
        with self._classified("transaction"):
            async with self._session() as session:
                tx = SQLiteTransactionContext(self, session)
                try:
                    async with session.begin():
                        result = await callback(tx)
                except (DatabaseError, SQLAlchemyError):
                    raise
                except Exception as e:
                    raise TransactionError(
                        f"Transaction aborted: {e}",
                        self.name,
                        original_error=e,
                        context={"operation": "transaction"},
                        is_retryable=False,
                    ) from e

        for event in tx.pending_events:
            self.events.emit(event)
        return result

    # Sync

    @traced("get_last_sync_timestamp")
    async def get_last_sync_timestamp(self) -> Optional[datetime.datetime]:
        self._ensure_connected("get_last_sync_timestamp")
        with self._classified("get_last_sync_timestamp", "metadata"):
            async with self._session() as session:
                value = await get_metadata_value(session, LAST_SYNC_KEY)
        self._last_sync = (
            ensure_timezone_aware(datetime.datetime.fromisoformat(value))
            if value else None
        )
        return self._last_sync

    @traced("set_last_sync_timestamp")
    async def set_last_sync_timestamp(self, timestamp: datetime.datetime) -> None:
        self._ensure_connected("set_last_sync_timestamp")
        timestamp = ensure_timezone_aware(timestamp)

        async def work(session: AsyncSession) -> None:
            await set_metadata_value(session, LAST_SYNC_KEY, timestamp.isoformat())

        await self._run_write("set_last_sync_timestamp", "metadata", work)
        self._last_sync = timestamp

    async def sync(self) -> SyncResult:
        """Nothing to synchronise for a local-only store."""
        return SyncResult(success=True)

    # Optional capabilities

    def subscribe_to_changes(
        self,
        listener: ChangeListener,
        options: Optional[EventSubscriptionOptions] = None,
    ) -> Callable[[], None]:
        return self.events.subscribe(listener, options)

    @traced("export_data")
    async def export_data(self, user_id: Optional[str] = None) -> DatabaseBackup:
        """Snapshot all notes, folders and recent notes, or one user's."""
        self._ensure_connected("export_data")
        scope = {"user_id": user_id} if user_id else None
        notes = await self.get_notes(scope)
        folders = await self.get_folders(scope)
        if user_id:
            recent = await self.get_recent_notes(user_id)
        else:
            recent = await self._all_recent_notes()

        data = BackupData(notes=notes, folders=folders, recent_notes=recent)
        backup = DatabaseBackup(
            version=BACKUP_FORMAT_VERSION,
            user_id=user_id,
            data=data,
            metadata=BackupMetadata(
                total_notes=len(notes),
                total_folders=len(folders),
                backup_size=len(data.model_dump_json().encode("utf-8")),
            ),
        )
        logger.info(
            "Exported %d notes, %d folders, %d recent notes",
            len(notes), len(folders), len(recent),
        )
        return backup

    async def _all_recent_notes(self) -> List[RecentNote]:
        with self._classified("export_data", "recent_notes"):
            async with self._session() as session:
                rows = (await session.execute(
                    select(DBRecentNote).order_by(
                        DBRecentNote.user_id,
                        DBRecentNote.timestamp.desc(),
                        literal_column("recent_notes.rowid").desc(),
                    )
                )).scalars().all()
                return [_recent_from_row(row) for row in rows]

    @traced("import_data")
    async def import_data(self, backup: Union[DatabaseBackup, Dict[str, Any]]) -> ImportResult:
        """Replay a backup: folders, then notes, then recent notes.

        Record ids and timestamps are preserved. Records whose id already
        exists, or which fail validation, are skipped and reported in
        ``errors``; one bad record never aborts the import.
        """
        self._ensure_connected("import_data")
        backup = self._coerce(DatabaseBackup, backup, "import_data")
        result = ImportResult()
        imported_folders: List[Folder] = []
        imported_notes: List[Note] = []

        for folder in backup.data.folders:
            try:
                await self._import_record(DBFolder, folder.id, _row_from_folder(folder))
            except DatabaseError as e:
                result.skipped.folders += 1
                result.errors.append(f"Folder {folder.id}: {e.message}")
            else:
                result.imported.folders += 1
                imported_folders.append(folder)

        for note in backup.data.notes:
            try:
                if not note.title.strip() and not note.content.strip():
                    raise ValidationError("Note must have a title or content",
                                          self.name, field="title")
                await self._import_record(DBNote, note.id, _row_from_note(note))
            except DatabaseError as e:
                result.skipped.notes += 1
                result.errors.append(f"Note {note.id}: {e.message}")
            else:
                result.imported.notes += 1
                imported_notes.append(note)

        touched_users: Set[str] = set()
        for recent in backup.data.recent_notes:
            try:
                await self._import_record(
                    DBRecentNote, (recent.id, recent.user_id),
                    DBRecentNote(
                        id=recent.id,
                        user_id=recent.user_id,
                        title=recent.title,
                        timestamp=to_storage_datetime(recent.timestamp),
                    ),
                )
            except DatabaseError as e:
                result.skipped.recent_notes += 1
                result.errors.append(f"Recent note {recent.id}: {e.message}")
            else:
                result.imported.recent_notes += 1
                touched_users.add(recent.user_id)

        for user_id in touched_users:
            await self._run_write(
                "import_data", "recent_notes",
                lambda s, uid=user_id: _trim_recent_notes(s, uid))

        if imported_folders:
            self._emit(ChangeType.BULK_CREATE, DatabaseTable.FOLDERS, imported_folders,
                       user_id=_common_user(imported_folders))
        if imported_notes:
            self._emit(ChangeType.BULK_CREATE, DatabaseTable.NOTES, imported_notes,
                       user_id=_common_user(imported_notes))

        logger.info(
            "Import finished: %s imported, %s skipped",
            result.imported.model_dump(), result.skipped.model_dump(),
        )
        return result

    async def _import_record(self, model: type, key: Any, row: Any) -> None:
        async def work(session: AsyncSession) -> None:
            if await session.get(model, key) is not None:
                raise ConflictError(
                    "already exists",
                    self.name,
                    code=ErrorCode.DUPLICATE_KEY,
                    context={"operation": "import_data", "table": model.__tablename__},
                )
            session.add(row)

        await self._run_write("import_data", model.__tablename__, work)

    async def clear_cache(self) -> None:
        """No cache is kept; nothing to clear."""

    async def get_cache_size(self) -> int:
        return 0


def _snapshot(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, list):
        return [item.model_copy(deep=True) for item in value]
    return value.model_copy(deep=True)
