"""
Audit sinks for reconciliation run summaries.

Sinks are append-only: the reconciliation core writes every run summary to
its sink and never reads anything back. A sink failure is logged by the
caller and never fails the run.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import Engine, delete, select

from identity_sync.database import create_session_factory
from identity_sync.logging_setup import audit_logger
from identity_sync.models import STATUS_COMPLETED, STATUS_FAILED, RunSummary, current_datetime
from identity_sync.notifications import send_run_failure_notification, send_run_summary
from identity_sync.schema import SyncLogRow

logger = logging.getLogger(__name__)


class AuditSink(ABC):
    """Receives the summary of every reconciliation run."""

    @abstractmethod
    def record(self, summary: RunSummary) -> None:
        """Persist or forward one run summary."""
        pass


class LoggingAuditSink(AuditSink):
    """Writes run summaries to the ``audit`` logger."""

    def record(self, summary: RunSummary) -> None:
        audit_logger.log_run(summary)
        for error in summary.skipped_errors:
            audit_logger.logger.warning(f"Skipped identity: {json.dumps(error.to_dict(), sort_keys=True)}")


class SqlAuditSink(AuditSink):
    """Stores run summaries in the ``sync_logs`` table."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = create_session_factory(engine)

    def record(self, summary: RunSummary) -> None:
        row = SyncLogRow(
            sync_type=summary.trigger,
            status=summary.status,
            total_users=summary.total_directory_records,
            new_users=summary.created,
            updated_users=summary.updated,
            deleted_users=summary.deleted,
            marked_missing=summary.marked_missing,
            restored_users=summary.restored,
            reactivated_users=summary.reactivated,
            errors=json.dumps([error.to_dict() for error in summary.skipped_errors]),
            error_message=summary.error,
            started_at=summary.started_at,
            completed_at=summary.completed_at,
            duration_seconds=summary.runtime_seconds,
        )
        with self._sessions.begin() as session:
            session.add(row)

    def get_sync_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Return the most recent run records, newest first.

        Args:
            limit: Maximum number of records to return
        """
        stmt = select(SyncLogRow).order_by(SyncLogRow.started_at.desc(), SyncLogRow.id.desc()).limit(limit)
        with self._sessions() as session:
            return [self._to_dict(row) for row in session.scalars(stmt)]

    def get_last_sync(self) -> Optional[Dict[str, Any]]:
        """Return the most recent run record, or None if no run was recorded."""
        history = self.get_sync_history(limit=1)
        return history[0] if history else None

    def cleanup_old_sync_logs(self, days_to_keep: int = 30) -> int:
        """
        Delete run records older than the retention period.

        Returns:
            Number of records deleted
        """
        cutoff = current_datetime() - timedelta(days=days_to_keep)
        with self._sessions.begin() as session:
            result = session.execute(delete(SyncLogRow).where(SyncLogRow.started_at < cutoff))
            deleted = result.rowcount or 0
        logger.info(f"Removed {deleted} sync log records older than {days_to_keep} days")
        return deleted

    def _to_dict(self, row: SyncLogRow) -> Dict[str, Any]:
        return {
            'id': row.id,
            'sync_type': row.sync_type,
            'status': row.status,
            'total_users': row.total_users,
            'new_users': row.new_users,
            'updated_users': row.updated_users,
            'deleted_users': row.deleted_users,
            'marked_missing': row.marked_missing,
            'restored_users': row.restored_users,
            'reactivated_users': row.reactivated_users,
            'errors': json.loads(row.errors) if row.errors else [],
            'error_message': row.error_message,
            'started_at': row.started_at.isoformat() if row.started_at else None,
            'completed_at': row.completed_at.isoformat() if row.completed_at else None,
            'duration_seconds': row.duration_seconds,
        }


class EmailAuditSink(AuditSink):
    """Emails failed runs, and successful runs when enabled."""

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: Notification configuration dictionary
        """
        self.config = config

    def record(self, summary: RunSummary) -> None:
        if summary.status == STATUS_FAILED:
            send_run_failure_notification(summary, self.config)
        elif summary.status == STATUS_COMPLETED:
            send_run_summary(summary, self.config)
        else:
            send_run_failure_notification(summary, self.config, title="Reconciliation Cancelled")


class CompositeAuditSink(AuditSink):
    """Forwards each summary to several sinks; one failing sink does not stop the others."""

    def __init__(self, sinks: Sequence[AuditSink]):
        self.sinks = list(sinks)

    def record(self, summary: RunSummary) -> None:
        failures = []
        for sink in self.sinks:
            try:
                sink.record(summary)
            except Exception as e:
                logger.error(f"Audit sink {type(sink).__name__} failed: {e}")
                failures.append(e)
        if failures and len(failures) == len(self.sinks):
            raise failures[0]
