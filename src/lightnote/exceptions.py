"""Custom exceptions for the LightNote storage layer.

Provides a structured exception hierarchy with machine-readable error
codes, coarse categories for UI messaging, severities and retry hints, so
that retry wrappers can be written once against the taxonomy, whatever the
provider.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Error codes for machine-readable error identification."""

    # Connection errors
    CONNECTION_FAILED = "CONNECTION_FAILED"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    CONNECTION_LOST = "CONNECTION_LOST"

    # Authentication errors
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"
    AUTH_EXPIRED = "AUTH_EXPIRED"

    # Authorization errors
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ACCESS_FORBIDDEN = "ACCESS_FORBIDDEN"

    # Validation errors
    INVALID_INPUT = "INVALID_INPUT"
    REQUIRED_FIELD = "REQUIRED_FIELD"
    INVALID_FORMAT = "INVALID_FORMAT"
    VALUE_TOO_LONG = "VALUE_TOO_LONG"
    VALUE_TOO_SHORT = "VALUE_TOO_SHORT"

    # Not found errors
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"
    TABLE_NOT_FOUND = "TABLE_NOT_FOUND"
    DATABASE_NOT_FOUND = "DATABASE_NOT_FOUND"

    # Conflict errors
    DUPLICATE_KEY = "DUPLICATE_KEY"
    FOREIGN_KEY_VIOLATION = "FOREIGN_KEY_VIOLATION"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    # Timeout errors
    OPERATION_TIMEOUT = "OPERATION_TIMEOUT"
    QUERY_TIMEOUT = "QUERY_TIMEOUT"

    # Network errors
    NETWORK_ERROR = "NETWORK_ERROR"
    OFFLINE = "OFFLINE"

    # Storage errors
    STORAGE_FULL = "STORAGE_FULL"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    CORRUPTION = "CORRUPTION"

    # Sync errors
    SYNC_CONFLICT = "SYNC_CONFLICT"
    SYNC_FAILED = "SYNC_FAILED"

    # Transaction errors
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"

    # Configuration errors
    INVALID_CONFIG = "INVALID_CONFIG"
    PROVIDER_NOT_SUPPORTED = "PROVIDER_NOT_SUPPORTED"
    OPERATION_NOT_SUPPORTED = "OPERATION_NOT_SUPPORTED"

    # Unknown errors
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorCategory(str, Enum):
    """Coarse grouping of error codes, used for UI messaging."""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    NETWORK = "network"
    STORAGE = "storage"
    SYNC = "sync"
    TRANSACTION = "transaction"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """How bad an error is."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Ordered (substring, category) pairs; first match wins
_CATEGORY_RULES = (
    ("CONNECTION", ErrorCategory.CONNECTION),
    ("NETWORK", ErrorCategory.NETWORK),
    ("OFFLINE", ErrorCategory.NETWORK),
    ("AUTH", ErrorCategory.AUTHENTICATION),
    ("PERMISSION", ErrorCategory.AUTHORIZATION),
    ("ACCESS", ErrorCategory.AUTHORIZATION),
    ("NOT_FOUND", ErrorCategory.NOT_FOUND),
    ("NOT_SUPPORTED", ErrorCategory.CONFIGURATION),
    ("INVALID_CONFIG", ErrorCategory.CONFIGURATION),
    ("INVALID", ErrorCategory.VALIDATION),
    ("REQUIRED", ErrorCategory.VALIDATION),
    ("FORMAT", ErrorCategory.VALIDATION),
    ("VALUE_TOO", ErrorCategory.VALIDATION),
    ("DUPLICATE", ErrorCategory.CONFLICT),
    ("VIOLATION", ErrorCategory.CONFLICT),
    ("CONFLICT", ErrorCategory.CONFLICT),
    ("CONCURRENT", ErrorCategory.CONFLICT),
    ("TIMEOUT", ErrorCategory.TIMEOUT),
    ("STORAGE", ErrorCategory.STORAGE),
    ("QUOTA", ErrorCategory.STORAGE),
    ("CORRUPTION", ErrorCategory.STORAGE),
    ("SYNC", ErrorCategory.SYNC),
    ("TRANSACTION", ErrorCategory.TRANSACTION),
    ("ROLLBACK", ErrorCategory.TRANSACTION),
)

_CRITICAL_CODES = {ErrorCode.CORRUPTION, ErrorCode.STORAGE_FULL}
_HIGH_CODES = {
    ErrorCode.CONNECTION_FAILED,
    ErrorCode.AUTH_INVALID,
    ErrorCode.PERMISSION_DENIED,
    ErrorCode.SYNC_FAILED,
    ErrorCode.INVALID_CONFIG,
}
_LOW_CODES = {
    ErrorCode.RECORD_NOT_FOUND,
    ErrorCode.INVALID_INPUT,
    ErrorCode.REQUIRED_FIELD,
    ErrorCode.INVALID_FORMAT,
}
_NON_RETRYABLE_CODES = {
    ErrorCode.AUTH_INVALID,
    ErrorCode.PERMISSION_DENIED,
    ErrorCode.ACCESS_FORBIDDEN,
    ErrorCode.INVALID_INPUT,
    ErrorCode.REQUIRED_FIELD,
    ErrorCode.INVALID_FORMAT,
    ErrorCode.VALUE_TOO_LONG,
    ErrorCode.VALUE_TOO_SHORT,
    ErrorCode.DUPLICATE_KEY,
    ErrorCode.FOREIGN_KEY_VIOLATION,
    ErrorCode.RECORD_NOT_FOUND,
    ErrorCode.TABLE_NOT_FOUND,
    ErrorCode.DATABASE_NOT_FOUND,
    ErrorCode.CORRUPTION,
    ErrorCode.INVALID_CONFIG,
    ErrorCode.PROVIDER_NOT_SUPPORTED,
    ErrorCode.OPERATION_NOT_SUPPORTED,
}

_SUGGESTED_ACTIONS: Dict[ErrorCode, List[str]] = {
    ErrorCode.CONNECTION_FAILED: [
        "Check that the database file is reachable",
        "Verify the provider was initialized",
        "Retry after a short delay",
    ],
    ErrorCode.AUTH_INVALID: [
        "Check your credentials",
        "Try logging in again",
    ],
    ErrorCode.RECORD_NOT_FOUND: [
        "Verify the record ID is correct",
        "Check if the record was deleted",
        "Refresh your data",
    ],
    ErrorCode.FOREIGN_KEY_VIOLATION: [
        "Move or delete the folder's notes and sub-folders first",
    ],
    ErrorCode.STORAGE_FULL: [
        "Free up disk space",
        "Delete unnecessary backups",
    ],
    ErrorCode.INVALID_INPUT: [
        "Check your input data",
        "Verify required fields are filled",
    ],
}


def infer_category(code: ErrorCode) -> ErrorCategory:
    """Derive the coarse category of an error code."""
    for marker, category in _CATEGORY_RULES:
        if marker in code.value:
            return category
    return ErrorCategory.UNKNOWN


def infer_severity(code: ErrorCode) -> ErrorSeverity:
    """Derive a default severity from an error code."""
    if code in _CRITICAL_CODES:
        return ErrorSeverity.CRITICAL
    if code in _HIGH_CODES:
        return ErrorSeverity.HIGH
    if code in _LOW_CODES:
        return ErrorSeverity.LOW
    return ErrorSeverity.MEDIUM


def infer_retryability(code: ErrorCode) -> bool:
    """Derive whether retrying an operation that failed with ``code`` makes sense."""
    return code not in _NON_RETRYABLE_CODES


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ErrorContext:
    """Where an error happened.

    Attributes:
        operation: Name of the provider operation (e.g. "create_note")
        table: Affected table, if any
        record_id: Affected record id, if any
        user_id: Owning user, if known
        timestamp: ISO 8601 UTC time the error was raised
        provider: Provider identity (e.g. "sqlite")
        additional_info: Free-form extra context
    """

    operation: str = "unknown"
    table: Optional[str] = None
    record_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: str = field(default_factory=_utc_timestamp)
    provider: Optional[str] = None
    additional_info: Dict[str, Any] = field(default_factory=dict)


class DatabaseError(Exception):
    """Base exception for all LightNote storage errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        category: Coarse grouping used for UI messaging
        severity: How bad the error is
        provider: Provider identity that raised the error
        context: Structured context (operation, table, record id, ...)
        original_error: Wrapped underlying exception, if any
        is_retryable: Whether a generic retry wrapper may try again
        retry_after_ms: Optional back-off hint in milliseconds
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        provider: Optional[str] = None,
        *,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
        is_retryable: Optional[bool] = None,
        retry_after_ms: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.category = category or infer_category(code)
        self.severity = severity or infer_severity(code)
        self.provider = provider
        self.original_error = original_error
        self.is_retryable = (
            infer_retryability(code) if is_retryable is None else is_retryable
        )
        self.retry_after_ms = retry_after_ms
        self.context = ErrorContext(provider=provider, **(context or {}))
        self.suggested_actions = _SUGGESTED_ACTIONS.get(
            code, ["Try again later", "Contact support if the problem persists"]
        )
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "code": self.code.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "provider": self.provider,
            "context": asdict(self.context),
            "is_retryable": self.is_retryable,
            "retry_after_ms": self.retry_after_ms,
            "original_error": (
                str(self.original_error)[:200] if self.original_error else None
            ),
            "suggested_actions": list(self.suggested_actions),
        }

    def __str__(self) -> str:
        where = self.context.operation
        if self.context.record_id:
            where = f"{where} {self.context.record_id}"
        return f"[{self.code.value}] {self.message} ({where})"


class NotFoundError(DatabaseError):
    """Raised when a record cannot be found."""

    def __init__(
        self,
        resource: str,
        record_id: str,
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            f"{resource} with id {record_id} not found",
            ErrorCode.RECORD_NOT_FOUND,
            provider,
            category=ErrorCategory.NOT_FOUND,
            severity=ErrorSeverity.LOW,
            context={**(context or {}), "record_id": record_id},
            is_retryable=False,
        )
        self.resource = resource
        self.record_id = record_id


class ValidationError(DatabaseError):
    """Raised when input data fails validation."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.INVALID_INPUT,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            code,
            provider,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            context=context,
            original_error=original_error,
            is_retryable=False,
        )
        self.field = field


class ConflictError(DatabaseError):
    """Raised when a write would break a structural invariant.

    Used for folder deletion safety (a folder with sub-folders or notes
    cannot be deleted) and for duplicate keys.
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        code: ErrorCode = ErrorCode.FOREIGN_KEY_VIOLATION,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            code,
            provider,
            category=ErrorCategory.CONFLICT,
            severity=ErrorSeverity.MEDIUM,
            context=context,
            original_error=original_error,
        )


class ProviderConnectionError(DatabaseError):
    """Raised when the backing store cannot be reached or is not open."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
        severity: ErrorSeverity = ErrorSeverity.HIGH,
    ):
        super().__init__(
            message,
            ErrorCode.CONNECTION_FAILED,
            provider,
            category=ErrorCategory.CONNECTION,
            severity=severity,
            context=context,
            original_error=original_error,
            is_retryable=True,
            retry_after_ms=5000,
        )


class TransactionError(DatabaseError):
    """Raised when an atomic unit of work fails or is misused."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
        is_retryable: bool = True,
    ):
        super().__init__(
            message,
            ErrorCode.TRANSACTION_FAILED,
            provider,
            category=ErrorCategory.TRANSACTION,
            severity=ErrorSeverity.MEDIUM,
            context=context,
            original_error=original_error,
            is_retryable=is_retryable,
        )


class SyncError(DatabaseError):
    """Raised for synchronisation and provider migration failures."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        code: ErrorCode = ErrorCode.SYNC_FAILED,
        conflict_data: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
        is_retryable: Optional[bool] = None,
    ):
        super().__init__(
            message,
            code,
            provider,
            category=ErrorCategory.SYNC,
            context=context,
            original_error=original_error,
            is_retryable=is_retryable,
        )
        self.conflict_data = conflict_data


class ConfigurationError(DatabaseError):
    """Raised for invalid or unsupported provider configuration."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        errors: Optional[List[str]] = None,
        code: ErrorCode = ErrorCode.INVALID_CONFIG,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            code,
            provider,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            context=context,
            is_retryable=False,
        )
        self.errors: List[str] = list(errors) if errors else []


def is_database_error(error: object) -> bool:
    return isinstance(error, DatabaseError)


def is_retryable_error(error: object) -> bool:
    return isinstance(error, DatabaseError) and error.is_retryable


def is_critical_error(error: object) -> bool:
    return (
        isinstance(error, DatabaseError)
        and error.severity == ErrorSeverity.CRITICAL
    )


def is_not_found_error(error: object) -> bool:
    return isinstance(error, NotFoundError)


def is_validation_error(error: object) -> bool:
    return isinstance(error, ValidationError)


def classify_storage_error(
    error: BaseException,
    provider: Optional[str],
    operation: str,
    table: Optional[str] = None,
    record_id: Optional[str] = None,
) -> DatabaseError:
    """Map a driver or SQLAlchemy failure onto the error taxonomy.

    Errors that are already ``DatabaseError`` instances are returned
    unchanged. The original exception is preserved as ``original_error``.

    Args:
        error: The exception raised by the storage engine
        provider: Provider identity
        operation: Provider operation that failed
        table: Affected table, if any
        record_id: Affected record id, if any

    Returns:
        A DatabaseError describing the failure.
    """
    if isinstance(error, DatabaseError):
        return error

    context = {"operation": operation, "table": table, "record_id": record_id}
    text = str(error).lower()

    if isinstance(error, IntegrityError):
        return ConflictError(
            f"Duplicate or conflicting record in {table or 'store'}",
            provider,
            code=ErrorCode.DUPLICATE_KEY,
            context=context,
            original_error=error,
        )
    if isinstance(error, OperationalError):
        if "locked" in text or "busy" in text:
            code = ErrorCode.OPERATION_TIMEOUT
        elif "disk is full" in text or "database or disk is full" in text:
            code = ErrorCode.STORAGE_FULL
        elif "malformed" in text or "not a database" in text:
            code = ErrorCode.CORRUPTION
        elif "no such table" in text:
            code = ErrorCode.TABLE_NOT_FOUND
        else:
            code = ErrorCode.CONNECTION_LOST
        return DatabaseError(
            f"Storage operation '{operation}' failed",
            code,
            provider,
            context=context,
            original_error=error,
        )
    if isinstance(error, SQLAlchemyError):
        return DatabaseError(
            f"Storage operation '{operation}' failed",
            ErrorCode.UNKNOWN_ERROR,
            provider,
            category=ErrorCategory.STORAGE,
            context=context,
            original_error=error,
        )
    return DatabaseError(
        f"Failed to {operation.replace('_', ' ')}",
        ErrorCode.UNKNOWN_ERROR,
        provider,
        context=context,
        original_error=error,
    )


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    retry_delay_ms: int = 1000,
) -> T:
    """Await ``operation`` and retry it on retryable database errors.

    Attempts are spaced linearly (``retry_delay_ms * attempt``) unless the
    error carries its own ``retry_after_ms`` hint. Non-retryable errors and
    the last failure are re-raised; exceptions outside the taxonomy are
    wrapped as UNKNOWN_ERROR.

    Args:
        operation: Zero-argument coroutine function to run
        max_retries: Maximum number of attempts (>= 1)
        retry_delay_ms: Base delay between attempts

    Returns:
        Whatever ``operation`` returns.

    Example:
        note = await execute_with_retry(lambda: provider.get_note(note_id))
    """
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")

    for attempt in range(1, max_retries + 1):
        try:
            return await operation()
        except DatabaseError as e:
            if not e.is_retryable or attempt == max_retries:
                raise
            delay_ms = e.retry_after_ms or retry_delay_ms * attempt
            logger.warning(
                "Retryable error %s on attempt %d/%d, retrying in %dms",
                e.code.value,
                attempt,
                max_retries,
                delay_ms,
            )
            await asyncio.sleep(delay_ms / 1000)
        except Exception as e:
            raise DatabaseError(
                str(e) or "Database operation failed",
                ErrorCode.UNKNOWN_ERROR,
                context={"operation": "execute_with_retry",
                         "additional_info": {"attempt": attempt}},
                original_error=e,
            ) from e

    raise AssertionError("unreachable")  # pragma: no cover
