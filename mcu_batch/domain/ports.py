"""Domain Ports - Abstract Contracts for MCU Record Storage.

This module defines the Port interfaces (abstract contracts) that storage
adapters must implement, the Result type used to report per-item outcomes,
and the exception hierarchy of the batch engine.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Storage adapters (DuckDB, PostgreSQL) implement these ports
    - The batch orchestrator only talks to these ports, never to a driver
    - The storage layer offers single-row writes only: there is no
      multi-table transaction, so consistency is handled by compensation

Error Propagation:
    - Anything raised before a write occurs reaches the caller unchanged
    - Anything that happens after a write has begun is captured as a
      Result and returned as data, except a failed compensation
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

from mcu_batch.domain.enums import MeasurementStatus
from mcu_batch.domain.models import EncounterRecord, MeasurementRecord, WhitelistEntry

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    The store adapter wraps every per-item write in a Result so that one
    failing measurement never aborts its siblings.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StorageError, NotFoundError, etc.)
        error_details: Additional error context (type_id, operation, etc.)

    Example:
        ```python
        result = Result.success_result(measurement)
        if result.is_success():
            saved.append(result.value)

        result = Result.failure_result(
            StorageError("connection reset"),
            error_details={"type_id": 5, "operation": "insert"}
        )
        if result.is_failure():
            log_error(result.error, result.error_details)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (defaults to the exception class name)
            error_details: Additional context (type_id, operation, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class BatchError(Exception):
    """Base exception for all batch-engine errors."""
    pass


class BatchValidationError(BatchError):
    """Raised when submitted data fails validation.

    Validation always runs before any write, so a validation error
    means no state was changed.

    Attributes:
        field: The offending field name (if applicable)
        type_id: The offending measurement type identifier (if applicable)
        details: Additional error details
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        type_id: Optional[Any] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message)
        self.field = field
        self.type_id = type_id
        self.details = details or {}


class MissingFieldError(BatchValidationError):
    """Raised when a required encounter field is absent or blank."""
    pass


class InvalidDateError(BatchValidationError):
    """Raised when the encounter date cannot be parsed."""
    pass


class InvalidWhitelistIdError(BatchValidationError):
    """Raised when a measurement type identifier is not whitelisted."""
    pass


class InvalidValueError(BatchValidationError):
    """Raised when a measurement value is non-numeric, non-finite or <= 0."""
    pass


class StorageError(BatchError):
    """Raised when a storage operation fails.

    Attributes:
        operation: The storage operation that failed (create, update, ...)
        details: Additional error context (never contains credentials)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class NotFoundError(StorageError):
    """Raised when an identifier is unknown to the store.

    Also raised when a measurement is written against an encounter
    that does not exist or is no longer active.
    """
    pass


class TransientStorageError(StorageError):
    """Raised for network-class failures that may succeed on retry."""
    pass


class PerItemWriteError(BatchError):
    """A single measurement write failed.

    Never raised across the store adapter boundary: it is captured in the
    batch result's failure list so sibling items keep going.

    Attributes:
        type_id: Measurement type identifier of the failing item
        operation: insert, update, delete or validate
    """

    def __init__(self, message: str, type_id: Optional[int] = None, operation: Optional[str] = None):
        super().__init__(message)
        self.type_id = type_id
        self.operation = operation


class VerificationMismatchWarning(UserWarning):
    """Read-back count differs from the expected count (storage may lag)."""
    pass


class CompensationFailureError(BatchError):
    """Raised when a compensating action itself fails.

    This is the only condition that requires manual operator cleanup: an
    encounter header may be left behind with undefined measurement state.

    Attributes:
        encounter_id: Identifier of the encounter that could not be compensated
        original_error: The exception that triggered compensation
        compensation_errors: Errors raised by the failing compensations
    """

    def __init__(
        self,
        message: str,
        encounter_id: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        compensation_errors: Optional[list] = None
    ):
        super().__init__(message)
        self.encounter_id = encounter_id
        self.original_error = original_error
        self.compensation_errors = compensation_errors or []


# ============================================================================
# Storage Ports
# ============================================================================

class EncounterStorePort(ABC):
    """Abstract contract for the encounter (MCU header) store.

    Implementations issue one statement per call. Soft-deleted encounters
    are excluded from reads unless explicitly requested.
    """

    @abstractmethod
    def create(self, fields: dict) -> EncounterRecord:
        """Persist a new encounter.

        Parameters:
            fields: Normalized encounter fields (snake_case keys)

        Returns:
            EncounterRecord: The stored encounter in ACTIVE state

        Raises:
            StorageError: If the row cannot be written
        """
        pass

    @abstractmethod
    def update(self, encounter_id: str, fields: dict) -> None:
        """Apply a partial update to an active encounter.

        Raises:
            NotFoundError: If the encounter is unknown or deleted
        """
        pass

    @abstractmethod
    def soft_delete(self, encounter_id: str) -> None:
        """Mark an encounter as DELETED.

        Raises:
            NotFoundError: If the encounter is unknown
        """
        pass

    @abstractmethod
    def get(self, encounter_id: str, include_deleted: bool = False) -> Optional[EncounterRecord]:
        """Fetch an encounter by identifier, or None."""
        pass


class MeasurementStorePort(ABC):
    """Abstract contract for the measurement (lab result) store."""

    @abstractmethod
    def create(self, measurement: MeasurementRecord) -> MeasurementRecord:
        """Persist a new measurement row.

        Raises:
            NotFoundError: If the owning encounter is not active
            StorageError: If the row cannot be written
        """
        pass

    @abstractmethod
    def update(self, measurement_id: str, fields: dict) -> None:
        """Apply a partial update (value, notes, status) to a measurement.

        Raises:
            NotFoundError: If the measurement is unknown or deleted
        """
        pass

    @abstractmethod
    def soft_delete(self, measurement_id: str) -> None:
        """Mark a measurement as DELETED.

        Raises:
            NotFoundError: If the measurement is unknown
        """
        pass

    @abstractmethod
    def list_by_encounter_id(self, encounter_id: str) -> list[MeasurementRecord]:
        """List ACTIVE measurements of an encounter.

        Only rows whose type id is whitelisted and whose value is positive
        are returned (storage-side defensive filtering).
        """
        pass

    @abstractmethod
    def get(self, measurement_id: str) -> Optional[MeasurementRecord]:
        """Fetch a measurement by identifier regardless of lifecycle state."""
        pass


class WhitelistRegistryPort(ABC):
    """Abstract contract for the measurement-type whitelist.

    Implementations must be immutable once constructed so that every
    validation within a batch sees the same table.
    """

    @abstractmethod
    def is_valid(self, type_id: Any) -> bool:
        """Check whether a type identifier is whitelisted."""
        pass

    @abstractmethod
    def get(self, type_id: int) -> Optional[WhitelistEntry]:
        """Return the entry for a type identifier, or None."""
        pass

    @abstractmethod
    def expected_count(self) -> int:
        """Number of measurement types a complete panel contains.

        Used only to emit a soft warning, never to reject a submission.
        """
        pass

    def classify(self, type_id: int, value: float) -> MeasurementStatus:
        """Derive the status label of a value for a type identifier."""
        entry = self.get(type_id)
        if entry is None:
            return MeasurementStatus.UNKNOWN
        return entry.classify(value)


class ChangeLogPort(ABC):
    """Optional contract for stores that persist the change audit log."""

    @abstractmethod
    def flush_change_logs(self, change_logs: list[dict]) -> Result[int]:
        """Persist change log entries (from ChangeAuditLogger.get_logs()).

        Returns:
            Result[int]: Number of entries persisted or error
        """
        pass
