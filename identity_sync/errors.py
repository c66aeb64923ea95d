"""
Error taxonomy for directory reconciliation.

Run-level errors abort a reconciliation run before (or while) local state is
touched. Record-level errors exclude a single identity from a run and are
collected into the run summary instead of being raised.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base exception for all reconciliation errors."""
    pass


class DirectoryUnavailableError(ReconciliationError):
    """Raised when the directory snapshot cannot be fetched or timed out."""
    pass


class StoreUnavailableError(ReconciliationError):
    """Raised when the local identity store has lost its connection entirely."""
    pass


class AlreadyRunningError(ReconciliationError):
    """Raised when a run is triggered while another run is still active."""
    pass


class NotFoundError(ReconciliationError):
    """Raised by a store when the requested identity does not exist."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Identity not found: {key}")


class ProtectedFieldError(ReconciliationError):
    """Raised by a store when a patch names a field reconciliation may not write."""

    def __init__(self, key: str, fields):
        self.key = key
        self.fields = sorted(fields)
        super().__init__(
            f"Refusing to patch non-authoritative fields for {key}: {', '.join(self.fields)}"
        )


class RecordError(ReconciliationError):
    """
    A failure scoped to a single identity record.

    Record errors never abort a run. They are appended to
    ``RunSummary.skipped_errors`` and persisted with the run's audit record.
    """

    kind = 'record_error'

    def __init__(self, key: Optional[str], message: str):
        self.key = key
        self.message = message
        super().__init__(f"{key or '<unknown>'}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.kind,
            'key': self.key,
            'message': self.message,
        }

    def __eq__(self, other):
        return (
            type(self) is type(other)
            and self.to_dict() == other.to_dict()
        )

    def __hash__(self):
        return hash((type(self).__name__, self.key, self.message))


class DuplicateKeyError(RecordError):
    """The same key appeared more than once in one directory snapshot."""

    kind = 'duplicate_key'

    def __init__(self, key: str, occurrences: int):
        self.occurrences = occurrences
        super().__init__(key, f"key appears {occurrences} times in directory snapshot")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['occurrences'] = self.occurrences
        return data


class MalformedRecordError(RecordError):
    """A directory record is missing, or carries an invalid, required field."""

    kind = 'malformed_record'

    def __init__(self, key: Optional[str], field: str, reason: str):
        self.field = field
        super().__init__(key, f"{field} {reason}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['field'] = self.field
        return data


class RecordApplyError(RecordError):
    """Applying a planned operation to the local store failed for one record."""

    kind = 'apply_failed'

    def __init__(self, key: str, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(key, f"{operation} failed: {type(cause).__name__}: {cause}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['operation'] = self.operation
        return data
