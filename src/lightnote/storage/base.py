"""Provider contract shared by every storage engine."""
import datetime
from abc import ABC, abstractmethod
from enum import Enum
from typing import (Any, Awaitable, Callable, Dict, List, Optional, Sequence,
                    Tuple, TypeVar, Union)

from pydantic import BaseModel, Field

from lightnote.config import DatabaseConfig
from lightnote.exceptions import DatabaseError, ErrorCode
from lightnote.models.schema import (Folder, FolderCreate, FolderUpdate, Note,
                                     NoteCreate, NoteUpdate, RecentNote,
                                     utc_now)
from lightnote.storage.events import (ChangeListener, DatabaseTable,
                                      EventSubscriptionOptions)
from lightnote.storage.filters import (FolderFilters, NoteFilters,
                                       QueryResult, RecentNotesFilters)

T = TypeVar("T")

NoteCreateInput = Union[NoteCreate, Dict[str, Any]]
NoteUpdateInput = Union[NoteUpdate, Dict[str, Any]]
FolderCreateInput = Union[FolderCreate, Dict[str, Any]]
FolderUpdateInput = Union[FolderUpdate, Dict[str, Any]]
NoteFiltersInput = Union[NoteFilters, Dict[str, Any], None]
FolderFiltersInput = Union[FolderFilters, Dict[str, Any], None]
TableName = Union[DatabaseTable, str]


class ProviderStatus(str, Enum):
    INITIALIZING = "initializing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    SYNCING = "syncing"
    OFFLINE = "offline"


class ProviderCapabilities(BaseModel):
    """What a provider supports. Checked before calling optional operations."""

    supports_realtime: bool = False
    supports_bulk_operations: bool = False
    supports_transactions: bool = False
    supports_full_text_search: bool = False
    supports_relations: bool = False
    supports_indexes: bool = False
    supports_backup: bool = False
    supports_encryption: bool = False
    max_concurrent_connections: int = 1
    max_record_size: int = Field(default=0, description="Bytes")


class ProviderInfo(BaseModel):
    name: str
    version: str
    status: ProviderStatus
    capabilities: ProviderCapabilities
    config: DatabaseConfig
    connected_at: Optional[datetime.datetime] = None
    last_sync: Optional[datetime.datetime] = None
    error_message: Optional[str] = None


class ChangeCounts(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0


class SyncChanges(BaseModel):
    notes: ChangeCounts = Field(default_factory=ChangeCounts)
    folders: ChangeCounts = Field(default_factory=ChangeCounts)


class SyncConflict(BaseModel):
    """A record changed on both sides of a sync."""

    id: str
    table: DatabaseTable
    type: str = Field(..., description="'update_conflict' or 'delete_conflict'")
    local_data: Union[Note, Folder]
    remote_data: Union[Note, Folder]
    resolution: Optional[str] = None


class SyncResult(BaseModel):
    success: bool
    synced_at: datetime.datetime = Field(default_factory=utc_now)
    changes: SyncChanges = Field(default_factory=SyncChanges)
    conflicts: List[SyncConflict] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class BackupData(BaseModel):
    notes: List[Note] = Field(default_factory=list)
    folders: List[Folder] = Field(default_factory=list)
    recent_notes: List[RecentNote] = Field(default_factory=list)


class BackupMetadata(BaseModel):
    total_notes: int = 0
    total_folders: int = 0
    backup_size: int = Field(default=0, description="Estimated size in bytes")


class DatabaseBackup(BaseModel):
    """A versioned snapshot of the store, optionally scoped to one user."""

    version: str = "1.0.0"
    created_at: datetime.datetime = Field(default_factory=utc_now)
    user_id: Optional[str] = None
    data: BackupData = Field(default_factory=BackupData)
    metadata: BackupMetadata = Field(default_factory=BackupMetadata)


class EntityCounts(BaseModel):
    notes: int = 0
    folders: int = 0
    recent_notes: int = 0


class ImportResult(BaseModel):
    success: bool = True
    imported_at: datetime.datetime = Field(default_factory=utc_now)
    imported: EntityCounts = Field(default_factory=EntityCounts)
    skipped: EntityCounts = Field(default_factory=EntityCounts)
    errors: List[str] = Field(default_factory=list)


class TransactionContext(ABC):
    """Mutations applied atomically inside ``DatabaseProvider.transaction``.

    Everything done through the context commits together when the callback
    returns, or not at all when it raises. There is no partial rollback.
    """

    @abstractmethod
    async def create_note(self, note: NoteCreateInput) -> Note: ...

    @abstractmethod
    async def update_note(self, note_id: str, updates: NoteUpdateInput) -> Note: ...

    @abstractmethod
    async def delete_note(self, note_id: str) -> None: ...

    @abstractmethod
    async def create_folder(self, folder: FolderCreateInput) -> Folder: ...

    @abstractmethod
    async def update_folder(self, folder_id: str, updates: FolderUpdateInput) -> Folder: ...

    @abstractmethod
    async def delete_folder(self, folder_id: str) -> None: ...

    @abstractmethod
    async def rollback(self) -> None:
        """Always fails: raise inside the callback to abort instead."""

    @abstractmethod
    async def commit(self) -> None:
        """No-op; the transaction commits when the callback returns."""


class DatabaseProvider(ABC):
    """Uniform data-access contract implemented by every storage engine.

    Lookups return None for absent records; updates and deletes of absent
    records raise ``NotFoundError``. Optional operations (change
    subscriptions, export/import, cache management) raise
    OPERATION_NOT_SUPPORTED unless the provider overrides them; callers
    should consult ``get_info().capabilities`` first.
    """

    name: str = "abstract"

    # Lifecycle

    @abstractmethod
    async def initialize(self) -> None:
        """Open the backing store and bring its schema up to date."""

    @abstractmethod
    async def close(self) -> None:
        """Release every resource held by the provider."""

    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the backing store answers a trivial query."""

    @abstractmethod
    def get_status(self) -> ProviderStatus: ...

    @abstractmethod
    def get_info(self) -> ProviderInfo: ...

    # Notes

    @abstractmethod
    async def create_note(self, note: NoteCreateInput) -> Note: ...

    @abstractmethod
    async def get_note(self, note_id: str) -> Optional[Note]: ...

    async def get_notes(self, filters: NoteFiltersInput = None) -> List[Note]:
        result = await self.get_notes_with_metadata(filters)
        return result.data

    @abstractmethod
    async def get_notes_with_metadata(
        self, filters: NoteFiltersInput = None
    ) -> QueryResult[Note]: ...

    @abstractmethod
    async def update_note(self, note_id: str, updates: NoteUpdateInput) -> Note: ...

    @abstractmethod
    async def delete_note(self, note_id: str) -> None: ...

    # Folders

    @abstractmethod
    async def create_folder(self, folder: FolderCreateInput) -> Folder: ...

    @abstractmethod
    async def get_folder(self, folder_id: str) -> Optional[Folder]: ...

    async def get_folders(self, filters: FolderFiltersInput = None) -> List[Folder]:
        result = await self.get_folders_with_metadata(filters)
        return result.data

    @abstractmethod
    async def get_folders_with_metadata(
        self, filters: FolderFiltersInput = None
    ) -> QueryResult[Folder]: ...

    @abstractmethod
    async def update_folder(self, folder_id: str, updates: FolderUpdateInput) -> Folder: ...

    @abstractmethod
    async def delete_folder(self, folder_id: str) -> None:
        """Delete an empty folder.

        Raises:
            NotFoundError: If the folder does not exist.
            ConflictError: If the folder has sub-folders or notes.
        """

    # Recent notes

    @abstractmethod
    async def add_recent_note(self, note: Note, user_id: str) -> None: ...

    @abstractmethod
    async def get_recent_notes(self, user_id: str, limit: int = 10) -> List[RecentNote]: ...

    @abstractmethod
    async def get_recent_notes_with_metadata(
        self, filters: Union[RecentNotesFilters, Dict[str, Any]]
    ) -> QueryResult[RecentNote]: ...

    @abstractmethod
    async def clear_recent_notes(self, user_id: str) -> None: ...

    # Bulk operations

    @abstractmethod
    async def bulk_create_notes(self, notes: Sequence[NoteCreateInput]) -> List[Note]: ...

    @abstractmethod
    async def bulk_update_notes(
        self, updates: Sequence[Tuple[str, NoteUpdateInput]]
    ) -> List[Note]:
        """Apply each patch independently; unknown ids are skipped."""

    @abstractmethod
    async def bulk_delete_notes(self, note_ids: Sequence[str]) -> None: ...

    @abstractmethod
    async def bulk_create_folders(self, folders: Sequence[FolderCreateInput]) -> List[Folder]: ...

    @abstractmethod
    async def bulk_update_folders(
        self, updates: Sequence[Tuple[str, FolderUpdateInput]]
    ) -> List[Folder]: ...

    @abstractmethod
    async def bulk_delete_folders(self, folder_ids: Sequence[str]) -> None: ...

    # Utility

    @abstractmethod
    async def count(
        self, table: TableName, filters: Union[NoteFiltersInput, FolderFiltersInput] = None
    ) -> int: ...

    @abstractmethod
    async def exists(self, table: TableName, record_id: str) -> bool: ...

    @abstractmethod
    async def search_notes(
        self, query: str, user_id: str, limit: Optional[int] = 50
    ) -> List[Note]: ...

    @abstractmethod
    async def transaction(
        self, callback: Callable[[TransactionContext], Awaitable[T]]
    ) -> T:
        """Run ``callback`` atomically across notes and folders."""

    async def move_note_to_folder(
        self, note_id: str, folder_id: Optional[str] = None
    ) -> Note:
        """Move a note into ``folder_id``, or to the root when None."""
        return await self.update_note(note_id, {"folder_id": folder_id})

    # Sync

    @abstractmethod
    async def get_last_sync_timestamp(self) -> Optional[datetime.datetime]: ...

    @abstractmethod
    async def set_last_sync_timestamp(self, timestamp: datetime.datetime) -> None: ...

    @abstractmethod
    async def sync(self) -> SyncResult: ...

    # Optional capabilities

    def _unsupported(self, operation: str) -> DatabaseError:
        return DatabaseError(
            f"{operation} is not supported by the {self.name} provider",
            ErrorCode.OPERATION_NOT_SUPPORTED,
            self.name,
            context={"operation": operation},
        )

    def subscribe_to_changes(
        self,
        listener: ChangeListener,
        options: Optional[EventSubscriptionOptions] = None,
    ) -> Callable[[], None]:
        raise self._unsupported("subscribe_to_changes")

    async def export_data(self, user_id: Optional[str] = None) -> DatabaseBackup:
        raise self._unsupported("export_data")

    async def import_data(self, backup: DatabaseBackup) -> ImportResult:
        raise self._unsupported("import_data")

    async def clear_cache(self) -> None:
        raise self._unsupported("clear_cache")

    async def get_cache_size(self) -> int:
        raise self._unsupported("get_cache_size")
