#!/usr/bin/env python3
"""
Tests for the command line entry point and service wiring.
"""

import io
import os
import sys
import json
import shutil
import tempfile
import unittest
import yaml
from contextlib import redirect_stdout
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.errors import AlreadyRunningError, DirectoryUnavailableError, DuplicateKeyError
from identity_sync.main import (
    EXIT_ALREADY_RUNNING,
    EXIT_CONFIGURATION_ERROR,
    EXIT_DIRECTORY_UNAVAILABLE,
    EXIT_FAILURE,
    EXIT_RECORD_ERRORS,
    EXIT_SUCCESS,
    IdentitySyncService,
    main,
)
from identity_sync.models import STATUS_CANCELLED, STATUS_FAILED, DirectoryRecord, RunSummary


def make_record(key, uid):
    return DirectoryRecord(
        key=key,
        distinguished_name=f'uid={key},ou=people,dc=example,dc=com',
        numeric_uid=uid,
        numeric_gid=2000,
        home_directory=f'/home/{key}',
        login_shell='/bin/bash',
    )


class TestExitCodes(unittest.TestCase):

    def setUp(self):
        self.service = IdentitySyncService()
        self.service.coordinator = Mock()
        self.service.coordinator.last_failure = None

    def test_clean_run(self):
        self.assertEqual(self.service.exit_code_for(RunSummary()), EXIT_SUCCESS)

    def test_record_errors(self):
        summary = RunSummary(skipped_errors=[DuplicateKeyError('carol', 2)])
        self.assertEqual(self.service.exit_code_for(summary), EXIT_RECORD_ERRORS)

    def test_cancelled(self):
        self.assertEqual(self.service.exit_code_for(RunSummary(status=STATUS_CANCELLED)), EXIT_RECORD_ERRORS)

    def test_directory_unavailable(self):
        self.service.coordinator.last_failure = DirectoryUnavailableError("timed out")
        self.assertEqual(self.service.exit_code_for(RunSummary(status=STATUS_FAILED)),
                         EXIT_DIRECTORY_UNAVAILABLE)

    def test_other_failure(self):
        self.service.coordinator.last_failure = RuntimeError("bug")
        self.assertEqual(self.service.exit_code_for(RunSummary(status=STATUS_FAILED)), EXIT_FAILURE)


class TestRunOnce(unittest.TestCase):

    def test_configuration_error(self):
        service = IdentitySyncService('/nonexistent/config.yaml')
        with patch('sys.stderr', new_callable=io.StringIO):
            self.assertEqual(service.run_once(), EXIT_CONFIGURATION_ERROR)

    def test_already_running(self):
        service = IdentitySyncService()
        coordinator = Mock()
        coordinator.run.side_effect = AlreadyRunningError("A reconciliation run is already in progress")

        with patch.object(service, 'initialize', return_value=coordinator), \
                patch('sys.stderr', new_callable=io.StringIO):
            self.assertEqual(service.run_once(), EXIT_ALREADY_RUNNING)


class TestCommandLine(unittest.TestCase):
    """Drives main() against a temporary SQLite database."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='identity_cli_test_')
        self.config_path = os.path.join(self.temp_dir, 'config.yaml')
        config = {
            'ldap': {
                'server_url': 'ldap://ldap.example.com:389',
                'bind_dn': 'cn=service,dc=example,dc=com',
                'bind_password': 'password',
                'user_base_dn': 'ou=people,dc=example,dc=com',
            },
            'database': {'url': f"sqlite:///{os.path.join(self.temp_dir, 'identities.db')}"},
            'reconciliation': {'max_workers': 1},
            'logging': {'log_dir': self.temp_dir, 'console_output': False},
        }
        with open(self.config_path, 'w') as f:
            yaml.dump(config, f)

        logging_patch = patch('identity_sync.main.setup_logging')
        logging_patch.start()
        self.addCleanup(logging_patch.stop)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_main(self, *args):
        output = io.StringIO()
        with redirect_stdout(output), patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as ctx:
                main(['--config', self.config_path] + list(args))
        return ctx.exception.code, output.getvalue()

    @patch('identity_sync.main.LDAPDirectoryReader.fetch_all')
    def test_run_then_status_and_history(self, mock_fetch):
        mock_fetch.return_value = [make_record('alice', 1001), make_record('bob', 1002)]

        code, output = self.run_main()
        self.assertEqual(code, EXIT_SUCCESS)
        summary = json.loads(output)
        self.assertEqual(summary['status'], 'completed')
        self.assertEqual(summary['created'], 2)
        self.assertEqual(summary['trigger'], 'manual')

        code, output = self.run_main('--status')
        self.assertEqual(code, EXIT_SUCCESS)
        status = json.loads(output)
        self.assertEqual(status['total_users'], 2)
        self.assertEqual(status['last_run']['new_users'], 2)

        code, output = self.run_main('--history', '5')
        self.assertEqual(code, EXIT_SUCCESS)
        self.assertEqual(len(json.loads(output)), 1)

    @patch('identity_sync.main.LDAPDirectoryReader.fetch_all')
    def test_directory_unavailable_exit_code(self, mock_fetch):
        mock_fetch.side_effect = DirectoryUnavailableError("LDAP directory unavailable: connection refused")

        code, output = self.run_main('--run-now')

        self.assertEqual(code, EXIT_DIRECTORY_UNAVAILABLE)
        self.assertEqual(json.loads(output)['status'], 'failed')

    @patch('identity_sync.main.LDAPDirectoryReader.fetch_all')
    def test_check_protection(self, mock_fetch):
        mock_fetch.return_value = [make_record('alice', 1001)]
        self.run_main()

        code, output = self.run_main('--check-protection', 'alice')

        self.assertEqual(code, EXIT_SUCCESS)
        result = json.loads(output)
        self.assertEqual(result['username'], 'alice')
        self.assertFalse(result['has_local_data'])

    def test_cleanup_sync_logs_uses_configured_retention(self):
        code, output = self.run_main('--cleanup-sync-logs')

        self.assertEqual(code, EXIT_SUCCESS)
        self.assertEqual(json.loads(output), {'deleted_sync_logs': 0})

    @patch('identity_sync.main.LDAPDirectoryReader.test_connection', return_value=True)
    def test_health_check(self, mock_test_connection):
        code, output = self.run_main('--health-check')

        self.assertEqual(code, EXIT_SUCCESS)
        health = json.loads(output)
        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['database']['status'], 'pass')
        self.assertEqual(health['checks']['ldap']['details']['user_base_dn'], 'ou=people,dc=example,dc=com')
        self.assertEqual(health['checks']['notifications']['status'], 'skip')

    def test_invalid_field_ownership_is_configuration_error(self):
        with open(self.config_path) as f:
            config = yaml.safe_load(f)
        config['reconciliation']['field_ownership'] = {'authoritative': ['phone']}
        with open(self.config_path, 'w') as f:
            yaml.dump(config, f)

        code, _ = self.run_main()

        self.assertEqual(code, EXIT_CONFIGURATION_ERROR)

    def test_missing_config_file(self):
        self.config_path = os.path.join(self.temp_dir, 'missing.yaml')

        code, _ = self.run_main('--status')

        self.assertEqual(code, EXIT_CONFIGURATION_ERROR)


if __name__ == '__main__':
    unittest.main()
