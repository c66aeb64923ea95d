"""
Command line entry point for Identity Sync.

This module wires the reconciliation components together from configuration
and exposes one-shot runs, the scheduling daemon, and the operational
commands (status, history, protection check, log cleanup, health check).
"""

import sys
import json
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from identity_sync.audit import CompositeAuditSink, EmailAuditSink, LoggingAuditSink, SqlAuditSink
from identity_sync.config import load_config, ConfigurationError
from identity_sync.coordinator import RunCoordinator
from identity_sync.errors import AlreadyRunningError, DirectoryUnavailableError
from identity_sync.executor import BatchExecutor
from identity_sync.ldap_client import LDAPDirectoryReader
from identity_sync.logging_setup import setup_logging
from identity_sync.models import STATUS_CANCELLED, STATUS_COMPLETED, RunSummary
from identity_sync.notifications import test_notification_config
from identity_sync.policy import FieldOwnershipPolicy
from identity_sync.reconciler import Reconciler
from identity_sync.scheduler import ReconciliationScheduler
from identity_sync.stores.sql import SqlIdentityStore

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_RECORD_ERRORS = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_UNAVAILABLE = 3
EXIT_FAILURE = 4
EXIT_ALREADY_RUNNING = 5


class IdentitySyncService:
    """
    Builds and owns the reconciliation components for one process.

    Components are created lazily by ``initialize`` so that commands which
    only need the database never touch the directory.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the service.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self.config = None
        self.policy = None
        self.store = None
        self.sync_logs = None
        self.reader = None
        self.coordinator = None

    def load_configuration(self) -> Dict[str, Any]:
        """Load and validate configuration, then configure logging."""
        if self.config is None:
            self.config = load_config(self.config_path)
            setup_logging(self.config.get('logging', {}))
        return self.config

    def initialize(self) -> RunCoordinator:
        """
        Create store, sinks, reader and coordinator from configuration.

        Raises:
            ConfigurationError: If configuration or field ownership is invalid
        """
        if self.coordinator is not None:
            return self.coordinator

        config = self.load_configuration()
        reconciliation = config['reconciliation']

        self.policy = FieldOwnershipPolicy.from_config(reconciliation.get('field_ownership'))
        self._open_store()

        audit_sink = CompositeAuditSink([
            LoggingAuditSink(),
            self.sync_logs,
            EmailAuditSink(config.get('notifications', {})),
        ])
        self.reader = LDAPDirectoryReader(config['ldap'])

        reconciler = Reconciler(self.policy, reconciliation['missing_grace_cycles'])
        executor = BatchExecutor(
            self.store,
            max_workers=reconciliation['max_workers'],
            policy=self.policy,
            seed_protected_on_create=reconciliation['seed_protected_on_create'],
        )
        self.coordinator = RunCoordinator(
            self.reader, self.store, reconciler, executor,
            audit_sink=audit_sink,
            fetch_timeout=reconciliation['fetch_timeout_seconds'],
        )
        logger.info(f"Identity sync initialized with {self.policy!r}")
        return self.coordinator

    def _open_store(self) -> None:
        if self.store is not None:
            return
        config = self.load_configuration()
        if self.policy is None:
            self.policy = FieldOwnershipPolicy.from_config(
                config['reconciliation'].get('field_ownership'))
        self.store = SqlIdentityStore.from_config(config['database'], self.policy)
        self.sync_logs = SqlAuditSink(self.store.engine)

    def run_once(self) -> int:
        """
        Run one manual reconciliation and print its summary.

        Returns:
            Exit code
        """
        try:
            coordinator = self.initialize()
            summary = coordinator.run()
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except AlreadyRunningError as e:
            logger.warning(str(e))
            print(str(e), file=sys.stderr)
            return EXIT_ALREADY_RUNNING
        except SQLAlchemyError as e:
            logger.error(f"Database error: {e}")
            print(f"Database error: {e}", file=sys.stderr)
            return EXIT_FAILURE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            print(f"Unexpected error: {e}", file=sys.stderr)
            return EXIT_FAILURE
        finally:
            self.close()

        print(json.dumps(summary.to_dict(), indent=2))
        return self.exit_code_for(summary)

    def exit_code_for(self, summary: RunSummary) -> int:
        """Map a run summary to the process exit code."""
        if summary.status == STATUS_COMPLETED:
            return EXIT_RECORD_ERRORS if summary.skipped_errors else EXIT_SUCCESS
        if summary.status == STATUS_CANCELLED:
            return EXIT_RECORD_ERRORS
        failure = self.coordinator.last_failure if self.coordinator else None
        if isinstance(failure, DirectoryUnavailableError):
            return EXIT_DIRECTORY_UNAVAILABLE
        return EXIT_FAILURE

    def run_daemon(self) -> int:
        """
        Run reconciliations on the configured interval until SIGTERM or SIGINT.

        Returns:
            Exit code
        """
        try:
            coordinator = self.initialize()
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except SQLAlchemyError as e:
            logger.error(f"Database error: {e}")
            print(f"Database error: {e}", file=sys.stderr)
            return EXIT_FAILURE

        scheduler = ReconciliationScheduler(
            coordinator,
            interval_seconds=self.config['reconciliation']['interval_seconds'],
        )
        scheduler.install_signal_handlers()
        scheduler.start()
        try:
            while not scheduler.wait(timeout=1.0):
                pass
        finally:
            scheduler.shutdown()
            self.close()
        logger.info("Identity sync daemon stopped")
        return EXIT_SUCCESS

    def get_status(self) -> Dict[str, Any]:
        """Return identity counts plus the most recent run record."""
        self._open_store()
        status = self.store.get_sync_status()
        status['last_run'] = self.sync_logs.get_last_sync()
        return status

    def get_history(self, limit: int) -> list:
        self._open_store()
        return self.sync_logs.get_sync_history(limit)

    def check_protection(self, key: str) -> Dict[str, Any]:
        """Report which protected fields of an identity hold local data."""
        self._open_store()
        fields = self.store.check_protected_fields(key)
        return {
            'username': key,
            'protected_fields_with_data': fields,
            'has_local_data': bool(fields),
        }

    def cleanup_sync_logs(self, days_to_keep: Optional[int] = None) -> int:
        self._open_store()
        if days_to_keep is None:
            days_to_keep = self.config.get('audit', {}).get('sync_log_retention_days', 30)
        return self.sync_logs.cleanup_old_sync_logs(days_to_keep)

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self.load_configuration()
            self.policy = FieldOwnershipPolicy.from_config(
                self.config['reconciliation'].get('field_ownership'))
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._open_store()
            with self.store.engine.connect() as connection:
                connection.execute(text('SELECT 1'))
            health_status['checks']['database'] = {
                'status': 'pass',
                'message': 'Database connection successful'
            }
        except SQLAlchemyError as e:
            health_status['checks']['database'] = {
                'status': 'fail',
                'message': f'Database connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        ldap_config = dict(self.config['ldap'])
        ldap_config['error_handling'] = {'max_retries': 1, 'retry_wait_seconds': 1}
        reader = LDAPDirectoryReader(ldap_config)
        if reader.test_connection():
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful',
                'details': reader.get_connection_stats()
            }
        else:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': 'LDAP connection failed'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def close(self):
        """Release database connections."""
        if self.store is not None:
            self.store.close()


def _run_store_command(service: IdentitySyncService, command) -> int:
    """Run a database-only command and print its JSON result."""
    try:
        result = command()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR
    except SQLAlchemyError as e:
        logger.error(f"Database error: {e}")
        print(f"Database error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        service.close()

    print(json.dumps(result, indent=2, default=str))
    return EXIT_SUCCESS


def main(argv=None):
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Identity Sync: reconcile directory identities into the local store')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--run-now', action='store_true',
                      help='Run one manual reconciliation (default)')
    mode.add_argument('--daemon', action='store_true',
                      help='Run reconciliations on the configured interval')
    mode.add_argument('--status', action='store_true',
                      help='Show identity counts and the last run')
    mode.add_argument('--history', type=int, metavar='N',
                      help='Show the last N reconciliation runs')
    mode.add_argument('--check-protection', metavar='USERNAME',
                      help='Show which protected fields of an identity hold local data')
    mode.add_argument('--cleanup-sync-logs', type=int, nargs='?', const=-1, metavar='DAYS',
                      help='Delete run records older than DAYS (default from config)')
    mode.add_argument('--health-check', action='store_true',
                      help='Perform health check instead of sync')
    mode.add_argument('--test-email', action='store_true',
                      help='Send test email notification')

    args = parser.parse_args(argv)

    service = IdentitySyncService(config_path=args.config)

    if args.health_check:
        health_status = service.health_check()
        service.close()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            service.load_configuration()
        except ConfigurationError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            sys.exit(EXIT_CONFIGURATION_ERROR)
        if test_notification_config(service.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    elif args.status:
        sys.exit(_run_store_command(service, service.get_status))

    elif args.history is not None:
        sys.exit(_run_store_command(service, lambda: service.get_history(args.history)))

    elif args.check_protection:
        sys.exit(_run_store_command(service, lambda: service.check_protection(args.check_protection)))

    elif args.cleanup_sync_logs is not None:
        days = None if args.cleanup_sync_logs < 0 else args.cleanup_sync_logs
        sys.exit(_run_store_command(
            service, lambda: {'deleted_sync_logs': service.cleanup_sync_logs(days)}))

    elif args.daemon:
        sys.exit(service.run_daemon())

    else:
        sys.exit(service.run_once())


if __name__ == "__main__":
    main()
