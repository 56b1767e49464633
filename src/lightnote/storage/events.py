"""Change events emitted by providers after successful mutations."""
import datetime
import logging
import threading
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from lightnote.models.schema import generate_id, utc_now

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Kinds of mutation reported by a change event."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BULK_CREATE = "bulk_create"
    BULK_UPDATE = "bulk_update"
    BULK_DELETE = "bulk_delete"


class DatabaseTable(str, Enum):
    NOTES = "notes"
    FOLDERS = "folders"
    RECENT_NOTES = "recent_notes"


class EventSource(str, Enum):
    """Where a change originated. Local providers only produce LOCAL."""

    LOCAL = "local"
    REMOTE = "remote"
    SYNC = "sync"


class ChangeEvent(BaseModel):
    """A completed mutation.

    ``data`` holds a snapshot of the resulting record (a list of snapshots
    for bulk changes); ``previous_data`` holds the pre-update snapshot.
    Snapshots are copies, never live store objects.
    """

    id: str = Field(default_factory=generate_id)
    type: ChangeType
    table: DatabaseTable
    data: Any = None
    previous_data: Any = None
    affected_ids: List[str] = Field(default_factory=list)
    timestamp: datetime.datetime = Field(default_factory=utc_now)
    source: EventSource = EventSource.LOCAL
    user_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class EventSubscriptionOptions(BaseModel):
    """Restricts which events a listener receives. Unset means everything."""

    tables: Optional[List[DatabaseTable]] = None
    operations: Optional[List[ChangeType]] = None
    user_id: Optional[str] = None

    def accepts(self, event: ChangeEvent) -> bool:
        if self.tables is not None and event.table not in self.tables:
            return False
        if self.operations is not None and event.type not in self.operations:
            return False
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        return True


ChangeListener = Callable[[ChangeEvent], None]


class ChangeEventEmitter:
    """Synchronous fan-out of change events to registered listeners.

    Listeners run in registration order inside ``emit``. A listener that
    raises is logged and skipped; the error never reaches the emitter's
    caller or the remaining listeners.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[Tuple[int, ChangeListener, Optional[EventSubscriptionOptions]]] = []
        self._next_token = 0

    def subscribe(
        self,
        listener: ChangeListener,
        options: Optional[EventSubscriptionOptions] = None,
    ) -> Callable[[], None]:
        """Register ``listener`` and return its unsubscribe function.

        The returned function may be called any number of times.
        """
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners.append((token, listener, options))

        def unsubscribe() -> None:
            with self._lock:
                self._listeners = [
                    entry for entry in self._listeners if entry[0] != token
                ]

        return unsubscribe

    def emit(self, event: ChangeEvent) -> None:
        """Deliver ``event`` to every matching listener."""
        with self._lock:
            snapshot = list(self._listeners)

        for _, listener, options in snapshot:
            if options is not None and not options.accepts(event):
                continue
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Change listener %r failed on %s %s event",
                    listener, event.table.value, event.type.value,
                )

    def clear(self) -> None:
        with self._lock:
            self._listeners = []

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)
