"""
Batch executor: applies a reconciliation plan to the local identity store.

Phases run one after another (creates, then updates, then deletes). Records
inside a phase are spread over a bounded thread pool, each in its own store
transaction, so one failing record never takes the rest of the run with it.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

from identity_sync.errors import RecordApplyError, StoreUnavailableError
from identity_sync.logging_setup import audit_logger
from identity_sync.models import ReconciliationPlan, RunSummary
from identity_sync.policy import FieldOwnershipPolicy
from identity_sync.stores.base import LocalIdentityStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4

PHASES = ('create', 'update', 'delete')


class RecordTask:
    """One unit of work for one key; returns the summary counters it earned."""

    def __init__(self, key: str, operation: str, func: Callable[[], Dict[str, int]]):
        self.key = key
        self.operation = operation
        self.func = func

    def __repr__(self):
        return f"RecordTask({self.operation} {self.key})"


class BatchExecutor:
    """
    Applies plans with per-record fault isolation and bounded concurrency.

    The worker count never exceeds the store's connection capacity, so a run
    cannot starve other users of the same connection pool.
    """

    def __init__(self, store: LocalIdentityStore, max_workers: int = DEFAULT_MAX_WORKERS,
                 policy: Optional[FieldOwnershipPolicy] = None, seed_protected_on_create: bool = False):
        """
        Initialize executor.

        Args:
            store: Local identity store to mutate
            max_workers: Upper bound of concurrent record operations per phase
            policy: Field ownership policy (defaults to the store's)
            seed_protected_on_create: Seed protected fields from directory data on creation
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        self.store = store
        self.policy = policy or store.policy
        self.seed_protected_on_create = seed_protected_on_create

        capacity = store.connection_capacity
        if capacity is not None and max_workers > capacity:
            logger.warning(f"Reducing reconciliation workers from {max_workers} to the store's "
                           f"connection capacity of {capacity}")
            max_workers = max(1, capacity)
        self.max_workers = max_workers

    def apply(self, plan: ReconciliationPlan, summary: Optional[RunSummary] = None,
              cancel_event: Optional[threading.Event] = None) -> RunSummary:
        """
        Apply a plan to the store.

        Args:
            plan: Plan computed by the reconciler
            summary: Summary to accumulate into (a new one if omitted)
            cancel_event: Cooperative cancellation flag, checked before each phase and record

        Returns:
            The summary with counts and per-record errors added

        Raises:
            StoreUnavailableError: If the store lost its connection; the summary
                passed in still holds everything applied before that
        """
        if summary is None:
            summary = RunSummary()
        if cancel_event is None:
            cancel_event = threading.Event()

        phase_tasks = {
            'create': self._create_tasks(plan),
            'update': self._update_tasks(plan),
            'delete': self._delete_tasks(plan),
        }

        for phase in PHASES:
            if cancel_event.is_set():
                logger.warning(f"Cancellation requested, not starting {phase} phase")
                break
            self._run_phase(phase, phase_tasks[phase], summary, cancel_event)

        return summary

    def _create_tasks(self, plan: ReconciliationPlan) -> List[RecordTask]:
        tasks = []
        for record in plan.creates:
            seed = self.policy.seed_protected(record) if self.seed_protected_on_create else None

            def create(record=record, seed=seed):
                self.store.create(record, seed=seed)
                return {'created': 1}

            tasks.append(RecordTask(record.key, 'create', create))
        return tasks

    def _update_tasks(self, plan: ReconciliationPlan) -> List[RecordTask]:
        # A key both patched and restored is handled by one task so two
        # transactions never race on the same row
        patches = dict(plan.updates)
        restores = set(plan.restores)
        reactivates = set(plan.reactivates)
        tasks = []
        for key in sorted(set(patches) | restores | reactivates):

            def update(key=key, patch=patches.get(key)):
                counters = {}
                if key in reactivates:
                    self.store.patch_authoritative(key, patch or {}, reactivate=True)
                    counters['reactivated'] = 1
                    if patch:
                        counters['updated'] = 1
                    return counters
                if patch:
                    self.store.patch_authoritative(key, patch)
                    counters['updated'] = 1
                if key in restores:
                    self.store.clear_missing(key)
                    counters['restored'] = 1
                return counters

            tasks.append(RecordTask(key, 'update', update))
        return tasks

    def _delete_tasks(self, plan: ReconciliationPlan) -> List[RecordTask]:
        tasks = []
        for key in plan.deletes:

            def cascade_delete(key=key):
                if self.store.cascade_delete(key):
                    return {'deleted': 1}
                logger.info(f"Identity {key} was already gone")
                return {}

            tasks.append(RecordTask(key, 'delete', cascade_delete))

        for key in plan.marks:

            def mark_missing(key=key):
                self.store.mark_missing(key)
                return {'marked_missing': 1}

            tasks.append(RecordTask(key, 'mark_missing', mark_missing))
        return tasks

    def _run_phase(self, phase: str, tasks: List[RecordTask], summary: RunSummary,
                   cancel_event: threading.Event) -> None:
        """Run one phase; results are folded into the summary in submission order."""
        if not tasks:
            return

        logger.info(f"Starting {phase} phase: {len(tasks)} records, {self.max_workers} workers")
        store_lost = threading.Event()
        skipped = 0
        fatal = None

        workers = min(self.max_workers, len(tasks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"reconcile-{phase}") as pool:
            futures = [pool.submit(self._run_task, task, cancel_event, store_lost) for task in tasks]

            for task, future in zip(tasks, futures):
                status, payload = future.result()
                if status == 'ok':
                    for counter, amount in payload.items():
                        setattr(summary, counter, getattr(summary, counter) + amount)
                elif status == 'error':
                    summary.skipped_errors.append(payload)
                elif status == 'fatal':
                    fatal = fatal or payload
                else:
                    skipped += 1

        if skipped:
            logger.warning(f"{phase} phase stopped early, {skipped} records not attempted")
        if fatal is not None:
            raise fatal
        logger.info(f"Finished {phase} phase")

    def _run_task(self, task: RecordTask, cancel_event: threading.Event,
                  store_lost: threading.Event) -> Tuple[str, object]:
        """Run one record task inside a worker thread, never raising."""
        if cancel_event.is_set() or store_lost.is_set():
            return 'skipped', None

        try:
            counters = task.func()
        except StoreUnavailableError as e:
            store_lost.set()
            logger.error(f"Store unavailable during {task.operation} of {task.key}: {e}")
            return 'fatal', e
        except Exception as e:
            logger.error(f"Failed to {task.operation} identity {task.key}: {e}")
            audit_logger.log_record_operation(task.operation, task.key, False)
            return 'error', RecordApplyError(task.key, task.operation, e)

        audit_logger.log_record_operation(task.operation, task.key, True)
        return 'ok', counters
