"""Storage layer for LightNote: provider contract, SQLite provider and factory."""

from lightnote.storage.base import DatabaseProvider, TransactionContext
from lightnote.storage.events import ChangeEvent, ChangeEventEmitter, ChangeType
from lightnote.storage.factory import ProviderFactory
from lightnote.storage.filters import (FolderFilters, NoteFilters, QueryResult,
                                       RecentNotesFilters)
from lightnote.storage.sqlite_provider import SQLiteProvider

__all__ = [
    "DatabaseProvider",
    "TransactionContext",
    "ChangeEvent",
    "ChangeEventEmitter",
    "ChangeType",
    "ProviderFactory",
    "NoteFilters",
    "FolderFilters",
    "RecentNotesFilters",
    "QueryResult",
    "SQLiteProvider",
]
