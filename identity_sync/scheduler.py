"""
Periodic scheduling of reconciliation runs.

Scheduled runs and manual runs go through the same RunCoordinator, so the
coordinator's single-run guard applies to both: a tick that lands while a
manual run is active is skipped, not queued.
"""

import logging
import signal
import threading
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from identity_sync.coordinator import RunCoordinator
from identity_sync.errors import AlreadyRunningError
from identity_sync.models import TRIGGER_MANUAL, TRIGGER_SCHEDULED, RunSummary

logger = logging.getLogger(__name__)

JOB_ID = 'identity-reconciliation'


class ReconciliationScheduler:
    """Triggers reconciliation runs at a fixed interval."""

    def __init__(self, coordinator: RunCoordinator, interval_seconds: int = 300,
                 run_immediately: bool = True):
        """
        Args:
            coordinator: Coordinator that performs the runs
            interval_seconds: Seconds between scheduled runs
            run_immediately: Fire the first run on start instead of after one interval
        """
        if interval_seconds < 1:
            raise ValueError("interval_seconds must be greater than zero")

        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._scheduler = BackgroundScheduler(timezone='UTC')
        self._stopped = threading.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return

        job_options = {}
        if self.run_immediately:
            # An explicit next_run_time of None would add the job paused
            job_options['next_run_time'] = datetime.now(timezone.utc)

        self._scheduler.add_job(
            self._scheduled_run,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **job_options,
        )
        self._stopped.clear()
        self._scheduler.start()
        self._running = True
        logger.info(f"Reconciliation scheduler started, interval {self.interval_seconds} seconds")

    def _scheduled_run(self) -> Optional[RunSummary]:
        try:
            return self.coordinator.run(trigger=TRIGGER_SCHEDULED)
        except AlreadyRunningError:
            logger.info("Scheduled reconciliation skipped: a run is already in progress")
            return None

    def run_now(self) -> RunSummary:
        """
        Run a manual reconciliation in the calling thread.

        Raises:
            AlreadyRunningError: If a scheduled or manual run is active
        """
        return self.coordinator.run(trigger=TRIGGER_MANUAL)

    def shutdown(self, cancel_active: bool = True, wait: bool = True) -> None:
        """
        Stop scheduling new runs.

        Args:
            cancel_active: Also ask an active run to stop at its next checkpoint
            wait: Block until an active run has returned
        """
        if not self._running:
            self._stopped.set()
            return

        logger.info("Stopping reconciliation scheduler")
        if cancel_active and self.coordinator.is_running:
            self.coordinator.request_cancel()
        self._scheduler.shutdown(wait=wait)
        self._running = False
        self._stopped.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown; returns True once the scheduler has stopped."""
        return self._stopped.wait(timeout)

    def install_signal_handlers(self) -> None:
        """Shut down on SIGTERM and SIGINT. Must be called from the main thread."""
        def handle_signal(signum, frame):
            logger.warning(f"Received signal {signal.Signals(signum).name}, shutting down")
            self.shutdown()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)
