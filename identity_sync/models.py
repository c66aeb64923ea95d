"""
Data model shared by the reconciliation components.

Directory records arrive fresh on every run and are never persisted as-is.
Local identities are the store's view of an identity row, split into the
sub-records each owner is allowed to write.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from identity_sync.errors import RecordError

UNASSIGNED_ROLE = 'unassigned'

TRIGGER_SCHEDULED = 'scheduled'
TRIGGER_MANUAL = 'manual'

STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'


@dataclass
class DirectoryRecord:
    """One identity as the directory reports it for the current run."""

    key: Optional[str]
    distinguished_name: Optional[str] = None
    numeric_uid: Any = None
    numeric_gid: Any = None
    home_directory: Optional[str] = None
    login_shell: Optional[str] = None
    # Seed-only attributes; never compared or patched after creation
    display_name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class LocalIdentity:
    """An identity row as held by the local store."""

    key: str
    authoritative: Dict[str, Any] = field(default_factory=dict)
    protected: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    missing_from_directory: bool = False
    missing_cycles: int = 0
    last_reconciled_at: Optional[datetime] = None


@dataclass
class ReconciliationPlan:
    """
    The create/update/delete decisions computed for one run.

    ``marks`` and ``restores`` are only populated when a grace policy keeps
    identities that vanished from the directory for more than one cycle.
    ``reactivates`` lists inactive identities whose key is back in the
    directory; they are switched active again together with any patch.
    """

    creates: List[DirectoryRecord] = field(default_factory=list)
    updates: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    deletes: List[str] = field(default_factory=list)
    marks: List[str] = field(default_factory=list)
    restores: List[str] = field(default_factory=list)
    reactivates: List[str] = field(default_factory=list)
    errors: List[RecordError] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes
                    or self.marks or self.restores or self.reactivates)

    def describe(self) -> Dict[str, Any]:
        """Plain representation used in logs and tests."""
        return {
            'creates': [record.key for record in self.creates],
            'updates': [[key, dict(sorted(patch.items()))] for key, patch in self.updates],
            'deletes': list(self.deletes),
            'marks': list(self.marks),
            'restores': list(self.restores),
            'reactivates': list(self.reactivates),
        }


@dataclass
class RunSummary:
    """Outcome of one reconciliation run, successful or not."""

    trigger: str = TRIGGER_MANUAL
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: str = STATUS_COMPLETED
    total_directory_records: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    marked_missing: int = 0
    restored: int = 0
    reactivated: int = 0
    skipped_errors: List[RecordError] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def runtime_seconds(self) -> float:
        if not self.started_at or not self.completed_at:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trigger': self.trigger,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'runtime_seconds': round(self.runtime_seconds, 3),
            'total_directory_records': self.total_directory_records,
            'created': self.created,
            'updated': self.updated,
            'deleted': self.deleted,
            'marked_missing': self.marked_missing,
            'restored': self.restored,
            'reactivated': self.reactivated,
            'skipped_errors': [error.to_dict() for error in self.skipped_errors],
            'error': self.error,
        }


def current_datetime() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
