"""Filter shapes and the in-memory query engine shared by all providers.

Providers may narrow candidate rows with indexed lookups first, but the
final predicate evaluation, sorting and pagination always run through the
functions in this module so that list, count and exists queries agree.
"""
import datetime
import re
import time
from datetime import timedelta
from typing import (Any, Callable, Dict, Generic, Iterable, List, Literal,
                    Optional, Sequence, Set, TypeVar)

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic import field_validator
from pydantic.alias_generators import to_camel

from lightnote.exceptions import ValidationError
from lightnote.models.schema import (Folder, Note, RecentNote,
                                     ensure_timezone_aware, utc_now)

T = TypeVar("T")

RECENT_NOTES_LIMIT = 10

NOTE_SORT_FIELDS = {
    "id", "user_id", "title", "content", "created_at", "updated_at",
    "is_pinned", "is_shared", "folder_id",
}
FOLDER_SORT_FIELDS = {
    "id", "name", "user_id", "created_at", "updated_at", "color", "parent_id",
}
RECENT_NOTE_SORT_FIELDS = {"id", "title", "user_id", "timestamp"}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class DateRange(BaseModel):
    """Closed interval of timestamps."""

    start: datetime.datetime
    end: datetime.datetime

    @field_validator("start", "end")
    @classmethod
    def validate_bounds(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)

    def contains(self, value: datetime.datetime) -> bool:
        return self.start <= value <= self.end


class BaseFilter(BaseModel):
    """Pagination and sort options common to every filter.

    ``limit=None`` means unlimited. Field names are accepted in snake_case
    or camelCase (``sort_by`` / ``sortBy``).
    """

    limit: Optional[int] = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)
    sort_by: Optional[str] = None
    sort_order: Optional[Literal["asc", "desc"]] = None

    model_config = ConfigDict(
        extra="forbid", populate_by_name=True, alias_generator=to_camel
    )

    def is_explicit(self, field_name: str) -> bool:
        """True if ``field_name`` was supplied, even as None."""
        return field_name in self.model_fields_set


class NoteFilters(BaseFilter):
    """Note query.

    ``folder_id=None`` passed explicitly selects root notes; leaving it
    unset matches any folder. ``tags`` matches notes carrying any of the
    given tags.
    """

    user_id: Optional[str] = None
    folder_id: Optional[str] = None
    tags: Optional[List[str]] = None
    is_pinned: Optional[bool] = None
    is_shared: Optional[bool] = None
    search_query: Optional[str] = None
    date_range: Optional[DateRange] = None
    title_contains: Optional[str] = None
    content_contains: Optional[str] = None


class FolderFilters(BaseFilter):
    """Folder query, with the same null/unset rule for ``parent_id``."""

    user_id: Optional[str] = None
    parent_id: Optional[str] = None
    name_contains: Optional[str] = None
    color: Optional[str] = None
    has_children: Optional[bool] = None


class RecentNotesFilters(BaseFilter):
    """Recent-notes query. ``limit`` defaults to, and never exceeds, 10."""

    user_id: Optional[str] = None
    since: Optional[datetime.datetime] = None
    max_age_ms: Optional[int] = Field(default=None, ge=0)

    @field_validator("since")
    @classmethod
    def validate_since(cls, v: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return ensure_timezone_aware(v) if v is not None else v

    @property
    def effective_limit(self) -> int:
        if self.limit is None:
            return RECENT_NOTES_LIMIT
        return min(self.limit, RECENT_NOTES_LIMIT)


class QueryMetadata(BaseModel):
    """Facts about an executed query."""

    total_count: int = Field(..., description="Matches before pagination")
    filtered_count: int = Field(..., description="Records returned")
    has_more: bool
    execution_time: float = Field(..., description="Milliseconds")
    cache_hit: bool = False


class QueryResult(BaseModel, Generic[T]):
    """A page of records plus query metadata."""

    data: List[T]
    metadata: QueryMetadata


def recent_notes_filter(days: int = 7, **overrides: Any) -> NoteFilters:
    """Notes updated within the last ``days`` days, newest first."""
    now = utc_now()
    return NoteFilters(
        date_range=DateRange(start=now - timedelta(days=days), end=now),
        sort_by="updated_at",
        sort_order="desc",
        **overrides,
    )


def pinned_notes_filter(**overrides: Any) -> NoteFilters:
    """All pinned notes, newest first."""
    return NoteFilters(is_pinned=True, sort_by="updated_at", sort_order="desc", **overrides)


def shared_notes_filter(**overrides: Any) -> NoteFilters:
    """All shared notes, newest first."""
    return NoteFilters(is_shared=True, sort_by="updated_at", sort_order="desc", **overrides)


def resolve_sort_field(sort_by: Optional[str], allowed: Set[str], default: str) -> str:
    """Map a camelCase or snake_case field name onto a sortable attribute.

    Raises:
        ValidationError: If the field is not sortable.
    """
    if not sort_by:
        return default
    name = _CAMEL_BOUNDARY.sub("_", sort_by).lower()
    if name not in allowed:
        raise ValidationError(
            f"Cannot sort by '{sort_by}'",
            field="sort_by",
            context={"operation": "query", "additional_info": {"allowed": sorted(allowed)}},
        )
    return name


def _sort_key(field_name: str) -> Callable[[Any], Any]:
    def key(item: Any) -> Any:
        value = getattr(item, field_name)
        # None sorts after every concrete value in ascending order
        return (value is None, value if value is not None else 0)
    return key


def execute_query(
    items: Sequence[T],
    predicate: Callable[[T], bool],
    filters: BaseFilter,
    sort_field: str,
    descending: bool,
    started: Optional[float] = None,
    limit: Optional[int] = None,
) -> QueryResult[T]:
    """Filter, sort and paginate ``items``.

    ``items`` must arrive in insertion order; the sort is stable, so ties
    keep that order in both directions.

    Args:
        items: Candidate records in insertion order.
        predicate: Conjunction of all filter predicates.
        filters: Pagination source.
        sort_field: Attribute to sort by.
        descending: Sort direction.
        started: ``time.perf_counter()`` at query start, for timing.
        limit: Overrides ``filters.limit`` (used for capped queries).
    """
    if started is None:
        started = time.perf_counter()
    if limit is None:
        limit = filters.limit

    matched = [item for item in items if predicate(item)]
    total = len(matched)
    matched.sort(key=_sort_key(sort_field), reverse=descending)

    offset = filters.offset
    page = matched[offset:] if limit is None else matched[offset:offset + limit]
    has_more = limit is not None and total > offset + limit

    return QueryResult(
        data=page,
        metadata=QueryMetadata(
            total_count=total,
            filtered_count=len(page),
            has_more=has_more,
            execution_time=(time.perf_counter() - started) * 1000,
        ),
    )


def note_predicate(filters: NoteFilters) -> Callable[[Note], bool]:
    """Build the AND of every predicate set on ``filters``."""
    checks: List[Callable[[Note], bool]] = []

    if filters.user_id is not None:
        checks.append(lambda n: n.user_id == filters.user_id)
    if filters.is_explicit("folder_id"):
        checks.append(lambda n: n.folder_id == filters.folder_id)
    if filters.is_pinned is not None:
        checks.append(lambda n: n.is_pinned == filters.is_pinned)
    if filters.is_shared is not None:
        checks.append(lambda n: bool(n.is_shared) == filters.is_shared)
    if filters.tags:
        wanted = set(filters.tags)
        checks.append(lambda n: not wanted.isdisjoint(n.tags))
    if filters.search_query:
        term = filters.search_query.lower()
        checks.append(
            lambda n: term in f"{n.title} {n.content} {' '.join(n.tags)}".lower()
        )
    if filters.title_contains:
        title_term = filters.title_contains.lower()
        checks.append(lambda n: title_term in n.title.lower())
    if filters.content_contains:
        content_term = filters.content_contains.lower()
        checks.append(lambda n: content_term in n.content.lower())
    if filters.date_range is not None:
        checks.append(lambda n: filters.date_range.contains(n.updated_at))

    return lambda note: all(check(note) for check in checks)


def folder_predicate(
    filters: FolderFilters, parent_ids: Optional[Set[str]] = None
) -> Callable[[Folder], bool]:
    """Build the AND of every predicate set on ``filters``.

    Args:
        filters: Folder filters.
        parent_ids: Ids of every folder that has at least one child; needed
            only when ``has_children`` is set.
    """
    checks: List[Callable[[Folder], bool]] = []

    if filters.user_id is not None:
        checks.append(lambda f: f.user_id == filters.user_id)
    if filters.is_explicit("parent_id"):
        checks.append(lambda f: f.parent_id == filters.parent_id)
    if filters.name_contains:
        term = filters.name_contains.lower()
        checks.append(lambda f: term in f.name.lower())
    if filters.color is not None:
        checks.append(lambda f: f.color == filters.color)
    if filters.has_children is not None:
        parents = parent_ids or set()
        checks.append(lambda f: (f.id in parents) == filters.has_children)

    return lambda folder: all(check(folder) for check in checks)


def recent_note_predicate(filters: RecentNotesFilters) -> Callable[[RecentNote], bool]:
    checks: List[Callable[[RecentNote], bool]] = []

    if filters.user_id is not None:
        checks.append(lambda r: r.user_id == filters.user_id)
    if filters.since is not None:
        checks.append(lambda r: r.timestamp >= filters.since)
    if filters.max_age_ms is not None:
        cutoff = utc_now() - timedelta(milliseconds=filters.max_age_ms)
        checks.append(lambda r: r.timestamp >= cutoff)

    return lambda recent: all(check(recent) for check in checks)


def filter_notes(
    notes: Sequence[Note], filters: Optional[NoteFilters] = None,
    started: Optional[float] = None,
) -> QueryResult[Note]:
    """Run a note query over ``notes`` (in insertion order)."""
    filters = filters or NoteFilters()
    sort_field = resolve_sort_field(filters.sort_by, NOTE_SORT_FIELDS, "updated_at")
    descending = (filters.sort_order or "desc") == "desc"
    return execute_query(
        notes, note_predicate(filters), filters, sort_field, descending, started
    )


def filter_folders(
    folders: Sequence[Folder], filters: Optional[FolderFilters] = None,
    parent_ids: Optional[Set[str]] = None, started: Optional[float] = None,
) -> QueryResult[Folder]:
    """Run a folder query over ``folders`` (in insertion order).

    When ``parent_ids`` is not given it is derived from ``folders``.
    """
    filters = filters or FolderFilters()
    if filters.has_children is not None and parent_ids is None:
        parent_ids = collect_parent_ids(folders)
    sort_field = resolve_sort_field(filters.sort_by, FOLDER_SORT_FIELDS, "name")
    descending = (filters.sort_order or "asc") == "desc"
    return execute_query(
        folders, folder_predicate(filters, parent_ids), filters, sort_field,
        descending, started,
    )


def filter_recent_notes(
    recent: Sequence[RecentNote], filters: Optional[RecentNotesFilters] = None,
    started: Optional[float] = None,
) -> QueryResult[RecentNote]:
    """Run a recent-notes query.

    ``recent`` must arrive newest insertion first so that entries with the
    same timestamp keep most-recent-first order.
    """
    filters = filters or RecentNotesFilters()
    sort_field = resolve_sort_field(filters.sort_by, RECENT_NOTE_SORT_FIELDS, "timestamp")
    descending = (filters.sort_order or "desc") == "desc"
    return execute_query(
        recent, recent_note_predicate(filters), filters, sort_field, descending,
        started, limit=filters.effective_limit,
    )


def collect_parent_ids(folders: Iterable[Folder]) -> Set[str]:
    """Ids of all folders referenced as a parent."""
    return {f.parent_id for f in folders if f.parent_id is not None}


def coerce_filters(model: type, filters: Any, operation: str) -> Any:
    """Accept a filter model or a plain mapping and return the model.

    Raises:
        ValidationError: If the mapping does not describe a valid filter.
    """
    if filters is None:
        return model()
    if isinstance(filters, model):
        return filters
    if isinstance(filters, dict):
        return validate_input(model, filters, operation)
    raise ValidationError(
        f"Expected {model.__name__} or dict, got {type(filters).__name__}",
        context={"operation": operation},
    )


def validate_input(model: type, data: Dict[str, Any], operation: str,
                   provider: Optional[str] = None) -> Any:
    """Validate ``data`` against a pydantic ``model``.

    Pydantic errors are translated into ``ValidationError`` carrying the
    first offending field.
    """
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = first.get("loc") or ()
        field_name = str(loc[0]) if loc else None
        raise ValidationError(
            f"Invalid {model.__name__}: {first.get('msg', str(e))}",
            provider,
            field=field_name,
            context={"operation": operation},
            original_error=e,
        ) from e
