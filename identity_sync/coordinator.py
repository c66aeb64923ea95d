"""
Run coordinator for directory reconciliation.

The coordinator owns the lifecycle of a reconciliation run: it makes sure only
one run is active per process, fetches the directory snapshot under a hard
timeout, hands the snapshot to the reconciler and the plan to the executor,
and emits the resulting summary to the audit sink whatever the outcome.
"""

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import List, Optional

from identity_sync.audit import AuditSink
from identity_sync.directory import DirectorySnapshotReader
from identity_sync.errors import AlreadyRunningError, DirectoryUnavailableError, StoreUnavailableError
from identity_sync.executor import BatchExecutor
from identity_sync.models import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    TRIGGER_MANUAL,
    DirectoryRecord,
    RunSummary,
    current_datetime,
)
from identity_sync.notifications import format_runtime
from identity_sync.reconciler import Reconciler
from identity_sync.stores.base import LocalIdentityStore

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 60.0


class RunState(enum.Enum):
    """States of the coordinator; every run ends back in IDLE."""

    IDLE = 'idle'
    RUNNING = 'running'
    COMPLETED = STATUS_COMPLETED
    FAILED = STATUS_FAILED
    CANCELLED = STATUS_CANCELLED


class RunCoordinator:
    """
    Runs reconciliation cycles one at a time.

    ``run`` never queues: a call made while another run is active fails
    immediately with AlreadyRunningError and changes nothing.
    """

    def __init__(self, reader: DirectorySnapshotReader, store: LocalIdentityStore,
                 reconciler: Reconciler, executor: BatchExecutor,
                 audit_sink: Optional[AuditSink] = None,
                 fetch_timeout: Optional[float] = DEFAULT_FETCH_TIMEOUT):
        """
        Initialize coordinator.

        Args:
            reader: Source of directory snapshots
            store: Local identity store
            reconciler: Computes plans from snapshot and local state
            executor: Applies plans to the store
            audit_sink: Receives every run summary
            fetch_timeout: Seconds to wait for the directory snapshot (None waits forever)
        """
        self.reader = reader
        self.store = store
        self.reconciler = reconciler
        self.executor = executor
        self.audit_sink = audit_sink
        self.fetch_timeout = fetch_timeout

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._state = RunState.IDLE
        self.last_outcome: Optional[RunState] = None
        self.last_summary: Optional[RunSummary] = None
        self.last_failure: Optional[Exception] = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is RunState.RUNNING

    def request_cancel(self) -> None:
        """
        Ask the active run to stop at its next checkpoint.

        Record operations already in flight finish or roll back normally. The
        flag is cleared when the run ends; a request made while idle cancels
        the next run before it touches anything.
        """
        logger.warning("Cancellation of reconciliation run requested")
        self._cancel.set()

    def run(self, trigger: str = TRIGGER_MANUAL) -> RunSummary:
        """
        Run one reconciliation cycle.

        Args:
            trigger: What started the run ('scheduled' or 'manual')

        Returns:
            Summary of the run; its status tells completed, failed or cancelled

        Raises:
            AlreadyRunningError: If another run is active
        """
        if not self._lock.acquire(blocking=False):
            logger.warning(f"Rejected {trigger} reconciliation run: another run is in progress")
            raise AlreadyRunningError("A reconciliation run is already in progress")

        try:
            self._state = RunState.RUNNING
            self.last_failure = None
            summary = RunSummary(trigger=trigger, started_at=current_datetime())
            logger.info(f"Starting {trigger} reconciliation run")

            try:
                outcome = self._execute(summary)
            except Exception as e:
                logger.error(f"Unexpected error during reconciliation run: {e}", exc_info=True)
                self.last_failure = e
                summary.error = f"Unexpected error: {e}"
                outcome = RunState.FAILED

            summary.status = outcome.value
            summary.completed_at = current_datetime()
            self._state = outcome
            self._log_summary(summary)
            self._emit(summary)

            self.last_outcome = outcome
            self.last_summary = summary
            return summary
        finally:
            self._cancel.clear()
            self._state = RunState.IDLE
            self._lock.release()

    def _execute(self, summary: RunSummary) -> RunState:
        if self._cancel.is_set():
            return RunState.CANCELLED

        try:
            snapshot = self._fetch_snapshot()
        except DirectoryUnavailableError as e:
            logger.error(f"Directory unavailable, local state left unchanged: {e}")
            self.last_failure = e
            summary.error = str(e)
            return RunState.FAILED
        summary.total_directory_records = len(snapshot)

        if self._cancel.is_set():
            return RunState.CANCELLED

        try:
            local_identities = self.store.find_all(active_only=False)
        except Exception as e:
            logger.error(f"Could not read local identities: {e}")
            self.last_failure = e
            summary.error = f"Local identity store unavailable: {e}"
            return RunState.FAILED

        plan = self.reconciler.diff(snapshot, local_identities)
        summary.skipped_errors.extend(plan.errors)

        if self._cancel.is_set():
            return RunState.CANCELLED

        try:
            self.executor.apply(plan, summary, self._cancel)
        except StoreUnavailableError as e:
            logger.error(f"Reconciliation aborted, identity store lost: {e}")
            self.last_failure = e
            summary.error = str(e)
            return RunState.FAILED

        if self._cancel.is_set():
            return RunState.CANCELLED
        return RunState.COMPLETED

    def _fetch_snapshot(self) -> List[DirectoryRecord]:
        """Fetch the directory snapshot, giving up after the fetch timeout."""
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="directory-fetch")
        try:
            future = pool.submit(self.reader.fetch_all)
            try:
                records = future.result(timeout=self.fetch_timeout)
            except FutureTimeoutError:
                future.cancel()
                raise DirectoryUnavailableError(
                    f"Directory fetch timed out after {self.fetch_timeout} seconds"
                )
            except DirectoryUnavailableError:
                raise
            except Exception as e:
                raise DirectoryUnavailableError(f"Directory fetch failed: {e}") from e
        finally:
            # A fetch stuck in network I/O is abandoned, not waited for
            pool.shutdown(wait=False)

        logger.info(f"Fetched {len(records)} directory records")
        return list(records)

    def _emit(self, summary: RunSummary) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.record(summary)
        except Exception as e:
            logger.error(f"Failed to record run summary in audit sink: {e}")

    def _log_summary(self, summary: RunSummary) -> None:
        logger.info("=== Reconciliation Summary ===")
        logger.info(f"Status: {summary.status} (trigger: {summary.trigger})")
        logger.info(f"Runtime: {format_runtime(summary.runtime_seconds)}")
        logger.info(f"Directory records: {summary.total_directory_records}")
        logger.info(f"Created: {summary.created}, updated: {summary.updated}, deleted: {summary.deleted}")
        if summary.marked_missing or summary.restored or summary.reactivated:
            logger.info(f"Marked missing: {summary.marked_missing}, restored: {summary.restored}, "
                        f"reactivated: {summary.reactivated}")
        logger.info(f"Skipped records: {len(summary.skipped_errors)}")
        if summary.error:
            logger.warning(f"Run error: {summary.error}")
