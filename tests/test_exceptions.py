"""Tests for the error taxonomy and retry helper."""
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from lightnote.exceptions import (ConfigurationError, ConflictError,
                                  DatabaseError, ErrorCategory, ErrorCode,
                                  ErrorSeverity, NotFoundError,
                                  ProviderConnectionError, SyncError,
                                  TransactionError, ValidationError,
                                  classify_storage_error, execute_with_retry,
                                  infer_category, infer_retryability,
                                  infer_severity, is_critical_error,
                                  is_database_error, is_not_found_error,
                                  is_retryable_error, is_validation_error)


class TestInference:
    """Severity, category and retryability derived from the code."""

    @pytest.mark.parametrize(
        "code,category",
        [
            (ErrorCode.CONNECTION_FAILED, ErrorCategory.CONNECTION),
            (ErrorCode.RECORD_NOT_FOUND, ErrorCategory.NOT_FOUND),
            (ErrorCode.INVALID_INPUT, ErrorCategory.VALIDATION),
            (ErrorCode.INVALID_CONFIG, ErrorCategory.CONFIGURATION),
            (ErrorCode.PROVIDER_NOT_SUPPORTED, ErrorCategory.CONFIGURATION),
            (ErrorCode.DUPLICATE_KEY, ErrorCategory.CONFLICT),
            (ErrorCode.FOREIGN_KEY_VIOLATION, ErrorCategory.CONFLICT),
            (ErrorCode.QUERY_TIMEOUT, ErrorCategory.TIMEOUT),
            (ErrorCode.OFFLINE, ErrorCategory.NETWORK),
            (ErrorCode.CORRUPTION, ErrorCategory.STORAGE),
            (ErrorCode.SYNC_FAILED, ErrorCategory.SYNC),
            (ErrorCode.ROLLBACK_FAILED, ErrorCategory.TRANSACTION),
            (ErrorCode.UNKNOWN_ERROR, ErrorCategory.UNKNOWN),
        ],
    )
    def test_category(self, code, category):
        assert infer_category(code) == category

    def test_severity(self):
        assert infer_severity(ErrorCode.CORRUPTION) == ErrorSeverity.CRITICAL
        assert infer_severity(ErrorCode.CONNECTION_FAILED) == ErrorSeverity.HIGH
        assert infer_severity(ErrorCode.RECORD_NOT_FOUND) == ErrorSeverity.LOW
        assert infer_severity(ErrorCode.OPERATION_TIMEOUT) == ErrorSeverity.MEDIUM

    def test_retryability(self):
        assert infer_retryability(ErrorCode.CONNECTION_FAILED) is True
        assert infer_retryability(ErrorCode.OPERATION_TIMEOUT) is True
        assert infer_retryability(ErrorCode.RECORD_NOT_FOUND) is False
        assert infer_retryability(ErrorCode.INVALID_INPUT) is False

    def test_explicit_values_override_inference(self):
        error = DatabaseError(
            "boom", ErrorCode.RECORD_NOT_FOUND,
            severity=ErrorSeverity.HIGH, is_retryable=True, retry_after_ms=50,
        )
        assert error.severity == ErrorSeverity.HIGH
        assert error.is_retryable is True
        assert error.retry_after_ms == 50


class TestDatabaseError:
    """Tests for the base error and its specializations."""

    def test_context_and_serialization(self):
        cause = RuntimeError("disk said no")
        error = DatabaseError(
            "Write failed",
            ErrorCode.STORAGE_FULL,
            "sqlite",
            context={"operation": "create_note", "table": "notes", "record_id": "n1"},
            original_error=cause,
        )
        data = error.to_dict()
        assert data["code"] == "STORAGE_FULL"
        assert data["severity"] == "critical"
        assert data["provider"] == "sqlite"
        assert data["context"]["operation"] == "create_note"
        assert data["context"]["provider"] == "sqlite"
        assert data["context"]["timestamp"]
        assert data["original_error"] == "disk said no"
        assert "Free up disk space" in data["suggested_actions"]
        assert str(error) == "[STORAGE_FULL] Write failed (create_note n1)"

    def test_not_found(self):
        error = NotFoundError("Note", "n1", "sqlite", context={"operation": "update_note"})
        assert error.message == "Note with id n1 not found"
        assert error.code == ErrorCode.RECORD_NOT_FOUND
        assert error.severity == ErrorSeverity.LOW
        assert error.is_retryable is False
        assert error.context.record_id == "n1"
        assert is_not_found_error(error)

    def test_validation_carries_field(self):
        error = ValidationError("Title required", "sqlite", field="title")
        assert error.field == "title"
        assert error.code == ErrorCode.INVALID_INPUT
        assert not error.is_retryable
        assert is_validation_error(error)

    def test_conflict_defaults(self):
        error = ConflictError("Folder has children")
        assert error.code == ErrorCode.FOREIGN_KEY_VIOLATION
        assert error.category == ErrorCategory.CONFLICT
        assert error.is_retryable is False

    def test_connection_error_is_retryable(self):
        error = ProviderConnectionError("Database not initialized", "sqlite")
        assert error.code == ErrorCode.CONNECTION_FAILED
        assert error.severity == ErrorSeverity.HIGH
        assert is_retryable_error(error)
        assert error.retry_after_ms == 5000

    def test_configuration_error_lists_problems(self):
        error = ConfigurationError("bad", errors=["a", "b"])
        assert error.errors == ["a", "b"]
        assert not error.is_retryable

    def test_transaction_and_sync(self):
        assert TransactionError("x", is_retryable=False).code == ErrorCode.TRANSACTION_FAILED
        sync_error = SyncError("x", conflict_data={"id": "n1"})
        assert sync_error.category == ErrorCategory.SYNC
        assert sync_error.conflict_data == {"id": "n1"}

    def test_predicates_reject_plain_exceptions(self):
        plain = ValueError("nope")
        assert not is_database_error(plain)
        assert not is_retryable_error(plain)
        assert not is_critical_error(plain)
        assert is_critical_error(DatabaseError("x", ErrorCode.CORRUPTION))


class TestClassifyStorageError:
    """Mapping of SQLAlchemy failures onto error codes."""

    def test_integrity_error(self):
        error = classify_storage_error(
            IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")),
            "sqlite", "create_note", "notes",
        )
        assert isinstance(error, ConflictError)
        assert error.code == ErrorCode.DUPLICATE_KEY

    @pytest.mark.parametrize(
        "message,code",
        [
            ("database is locked", ErrorCode.OPERATION_TIMEOUT),
            ("database or disk is full", ErrorCode.STORAGE_FULL),
            ("database disk image is malformed", ErrorCode.CORRUPTION),
            ("no such table: notes", ErrorCode.TABLE_NOT_FOUND),
            ("unable to open database file", ErrorCode.CONNECTION_LOST),
        ],
    )
    def test_operational_errors(self, message, code):
        error = classify_storage_error(
            OperationalError("SELECT", {}, Exception(message)), "sqlite", "get_note",
        )
        assert error.code == code
        assert isinstance(error.original_error, OperationalError)

    def test_other_sqlalchemy_error(self):
        error = classify_storage_error(SQLAlchemyError("odd"), "sqlite", "count")
        assert error.code == ErrorCode.UNKNOWN_ERROR
        assert error.category == ErrorCategory.STORAGE

    def test_database_errors_pass_through(self):
        original = NotFoundError("Note", "n1")
        assert classify_storage_error(original, "sqlite", "get_note") is original

    def test_unknown_exception(self):
        error = classify_storage_error(KeyError("x"), "sqlite", "update_note", "notes", "n1")
        assert error.code == ErrorCode.UNKNOWN_ERROR
        assert error.message == "Failed to update note"
        assert error.context.record_id == "n1"


class TestExecuteWithRetry:
    """Tests for the generic retry wrapper."""

    @pytest.mark.anyio
    async def test_returns_first_success(self):
        calls = []

        async def operation():
            calls.append(1)
            return "ok"

        assert await execute_with_retry(operation) == "ok"
        assert len(calls) == 1

    @pytest.mark.anyio
    async def test_retries_retryable_errors(self):
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise DatabaseError("busy", ErrorCode.OPERATION_TIMEOUT)
            return len(attempts)

        assert await execute_with_retry(operation, max_retries=3, retry_delay_ms=1) == 3

    @pytest.mark.anyio
    async def test_non_retryable_error_is_raised_immediately(self):
        attempts = []

        async def operation():
            attempts.append(1)
            raise NotFoundError("Note", "n1")

        with pytest.raises(NotFoundError):
            await execute_with_retry(operation, retry_delay_ms=1)
        assert len(attempts) == 1

    @pytest.mark.anyio
    async def test_last_failure_is_raised(self):
        async def operation():
            raise DatabaseError("busy", ErrorCode.OPERATION_TIMEOUT, retry_after_ms=1)

        with pytest.raises(DatabaseError) as exc_info:
            await execute_with_retry(operation, max_retries=2)
        assert exc_info.value.code == ErrorCode.OPERATION_TIMEOUT

    @pytest.mark.anyio
    async def test_foreign_exceptions_are_wrapped(self):
        async def operation():
            raise RuntimeError("kaput")

        with pytest.raises(DatabaseError) as exc_info:
            await execute_with_retry(operation)
        assert exc_info.value.code == ErrorCode.UNKNOWN_ERROR
        assert isinstance(exc_info.value.original_error, RuntimeError)

    @pytest.mark.anyio
    async def test_rejects_zero_attempts(self):
        async def operation():
            return None

        with pytest.raises(ValueError):
            await execute_with_retry(operation, max_retries=0)
