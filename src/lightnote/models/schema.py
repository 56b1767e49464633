"""Data models for the LightNote storage layer."""

import datetime
import uuid
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(
    dt_value: Optional[datetime.datetime],
) -> Optional[datetime.datetime]:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive datetimes, so every value read from the store
    passes through here.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
        None is returned unchanged.
    """
    if dt_value is None:
        return None
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def generate_id() -> str:
    """Generate an opaque, globally unique record id."""
    return str(uuid.uuid4())


def dedupe_tags(tags: List[str]) -> List[str]:
    """Collapse duplicate tags, keeping the first occurrence of each."""
    seen = set()
    result = []
    for tag in tags:
        if tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


@dataclass(frozen=True)
class EntityMetadata:
    """Storage description of an entity collection.

    Attributes:
        table_name: Name of the backing table.
        primary_key: Primary key column(s).
        created_at_field: Field holding the creation time.
        updated_at_field: Field holding the last modification time.
        indexes: Single-field indexes present since schema v1.
    """

    table_name: str
    primary_key: Tuple[str, ...]
    created_at_field: str
    updated_at_field: str
    indexes: Tuple[str, ...] = field(default_factory=tuple)


NOTE_METADATA = EntityMetadata(
    table_name="notes",
    primary_key=("id",),
    created_at_field="created_at",
    updated_at_field="updated_at",
    indexes=("user_id", "folder_id", "is_pinned", "is_shared"),
)

FOLDER_METADATA = EntityMetadata(
    table_name="folders",
    primary_key=("id",),
    created_at_field="created_at",
    updated_at_field="updated_at",
    indexes=("user_id", "parent_id"),
)

RECENT_NOTE_METADATA = EntityMetadata(
    table_name="recent_notes",
    primary_key=("id", "user_id"),
    created_at_field="timestamp",
    updated_at_field="timestamp",
    indexes=("user_id", "timestamp"),
)


class Note(BaseModel):
    """A note owned by a single user."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    user_id: str = Field(..., description="Owning user")
    title: str = Field(default="", description="Title of the note")
    content: str = Field(default="", description="Plain or markdown text")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last updated (UTC)"
    )
    tags: List[str] = Field(default_factory=list, description="Tags, treated as a set")
    is_pinned: bool = Field(default=False, description="Pinned to the top of lists")
    is_shared: Optional[bool] = Field(default=None, description="Publicly shared")
    folder_id: Optional[str] = Field(default=None, description="Containing folder")

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return dedupe_tags(v)

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)

    def __str__(self) -> str:
        return f"Note({self.id}: {self.title!r})"


class Folder(BaseModel):
    """A folder, optionally nested under a parent folder."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the folder")
    name: str = Field(..., description="Display name")
    user_id: str = Field(..., description="Owning user")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)
    color: Optional[str] = Field(default=None, description="Color tag")
    parent_id: Optional[str] = Field(default=None, description="Parent folder")

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)


class RecentNote(BaseModel):
    """An entry in a user's recently viewed list.

    The title is cached when the note is accessed and may go stale.
    """

    id: str = Field(..., description="ID of the referenced note")
    title: str = Field(default="", description="Cached note title")
    user_id: str = Field(..., description="Owning user")
    timestamp: datetime.datetime = Field(
        default_factory=utc_now, description="Last access time (UTC)"
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)


class NoteCreate(BaseModel):
    """Input for creating a note. Ids and timestamps are engine assigned."""

    user_id: str
    title: str = ""
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    is_pinned: bool = False
    is_shared: Optional[bool] = None
    folder_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return dedupe_tags(v)

    def is_empty(self) -> bool:
        """True when both title and content are blank."""
        return not self.title.strip() and not self.content.strip()


class NoteUpdate(BaseModel):
    """Partial note update.

    Only fields explicitly supplied are merged. ``folder_id=None`` moves the
    note to the root and ``is_shared=None`` clears the shared flag; the other
    fields cannot be cleared.
    """

    user_id: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    tags: Optional[List[str]] = None
    is_pinned: Optional[bool] = None
    is_shared: Optional[bool] = None
    folder_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("user_id", "title", "content", "tags", "is_pinned")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("field cannot be null")
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return dedupe_tags(v) if v is not None else v


class FolderCreate(BaseModel):
    """Input for creating a folder."""

    name: str
    user_id: str
    color: Optional[str] = None
    parent_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class FolderUpdate(BaseModel):
    """Partial folder update; ``parent_id=None`` moves the folder to the root."""

    name: Optional[str] = None
    user_id: Optional[str] = None
    color: Optional[str] = None
    parent_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("name", "user_id")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("field cannot be null")
        return v
