#!/usr/bin/env python3
"""
Tests for audit sinks and run notifications.
"""

import os
import sys
import shutil
import smtplib
import tempfile
import unittest
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.audit import CompositeAuditSink, EmailAuditSink, LoggingAuditSink, SqlAuditSink
from identity_sync.database import create_engine_from_config, create_schema
from identity_sync.errors import DuplicateKeyError, MalformedRecordError
from identity_sync.models import STATUS_CANCELLED, STATUS_FAILED, TRIGGER_SCHEDULED, RunSummary
from identity_sync.notifications import (
    format_runtime,
    send_email,
    send_run_failure_notification,
    send_run_summary,
)


def make_summary(**overrides):
    started = datetime(2024, 3, 1, 12, 0, 0)
    values = dict(
        trigger=TRIGGER_SCHEDULED,
        started_at=started,
        completed_at=started + timedelta(seconds=4.5),
        total_directory_records=12,
        created=2,
        updated=3,
        deleted=1,
        skipped_errors=[DuplicateKeyError('carol', 2),
                        MalformedRecordError('gina', 'numeric_uid', 'is missing')],
    )
    values.update(overrides)
    return RunSummary(**values)


class TestSqlAuditSink(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='identity_audit_test_')
        self.engine = create_engine_from_config(
            {'url': f"sqlite:///{os.path.join(self.temp_dir, 'audit.db')}"})
        create_schema(self.engine)
        self.sink = SqlAuditSink(self.engine)

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_record_and_read_back(self):
        self.sink.record(make_summary())

        last = self.sink.get_last_sync()

        self.assertEqual(last['sync_type'], 'scheduled')
        self.assertEqual(last['status'], 'completed')
        self.assertEqual(last['total_users'], 12)
        self.assertEqual((last['new_users'], last['updated_users'], last['deleted_users']), (2, 3, 1))
        self.assertEqual(last['duration_seconds'], 4.5)
        self.assertEqual([e['type'] for e in last['errors']], ['duplicate_key', 'malformed_record'])
        self.assertEqual(last['errors'][0]['key'], 'carol')

    def test_history_is_newest_first(self):
        for day in (1, 3, 2):
            started = datetime(2024, 3, day, 8, 0, 0)
            self.sink.record(make_summary(started_at=started, completed_at=started, created=day))

        history = self.sink.get_sync_history(limit=2)

        self.assertEqual([entry['new_users'] for entry in history], [3, 2])

    def test_no_history(self):
        self.assertIsNone(self.sink.get_last_sync())
        self.assertEqual(self.sink.get_sync_history(), [])

    def test_cleanup_removes_old_records(self):
        old = datetime.now() - timedelta(days=90)
        recent = datetime.now() - timedelta(days=1)
        self.sink.record(make_summary(started_at=old, completed_at=old))
        self.sink.record(make_summary(started_at=recent, completed_at=recent))

        deleted = self.sink.cleanup_old_sync_logs(days_to_keep=30)

        self.assertEqual(deleted, 1)
        self.assertEqual(len(self.sink.get_sync_history()), 1)

    def test_failed_run_message_is_stored(self):
        self.sink.record(make_summary(status=STATUS_FAILED, error='LDAP directory unavailable',
                                      skipped_errors=[]))

        last = self.sink.get_last_sync()
        self.assertEqual(last['status'], 'failed')
        self.assertEqual(last['error_message'], 'LDAP directory unavailable')
        self.assertEqual(last['errors'], [])


class TestLoggingAuditSink(unittest.TestCase):

    def test_logs_run_and_skipped_records(self):
        with self.assertLogs('audit', level='INFO') as logs:
            LoggingAuditSink().record(make_summary())

        output = '\n'.join(logs.output)
        self.assertIn('Reconciliation run COMPLETED', output)
        self.assertIn('"key": "carol"', output)
        self.assertIn('"key": "gina"', output)

    def test_failed_run_logged_as_warning(self):
        with self.assertLogs('audit', level='WARNING') as logs:
            LoggingAuditSink().record(make_summary(status=STATUS_FAILED, skipped_errors=[]))

        self.assertIn('FAILED', logs.output[0])


class TestEmailAuditSink(unittest.TestCase):

    @patch('identity_sync.audit.send_run_summary')
    @patch('identity_sync.audit.send_run_failure_notification')
    def test_routes_by_status(self, mock_failure, mock_success):
        sink = EmailAuditSink({'enable_email': True})

        completed = make_summary()
        sink.record(completed)
        mock_success.assert_called_once_with(completed, sink.config)

        failed = make_summary(status=STATUS_FAILED)
        sink.record(failed)
        mock_failure.assert_called_once_with(failed, sink.config)

        cancelled = make_summary(status=STATUS_CANCELLED)
        sink.record(cancelled)
        mock_failure.assert_called_with(cancelled, sink.config, title="Reconciliation Cancelled")


class TestCompositeAuditSink(unittest.TestCase):

    def test_one_failing_sink_does_not_block_others(self):
        broken = Mock()
        broken.record.side_effect = RuntimeError("disk full")
        healthy = Mock()
        summary = make_summary()

        CompositeAuditSink([broken, healthy]).record(summary)

        healthy.record.assert_called_once_with(summary)

    def test_raises_when_every_sink_fails(self):
        broken = Mock()
        broken.record.side_effect = RuntimeError("disk full")

        with self.assertRaises(RuntimeError):
            CompositeAuditSink([broken]).record(make_summary())


class TestNotifications(unittest.TestCase):

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@example.com',
            'smtp_password': 'smtppass',
            'email_from': 'alerts@example.com',
            'email_to': ['admin@example.com'],
        }

    def test_disabled_email_sends_nothing(self):
        with patch('identity_sync.notifications.smtplib.SMTP') as mock_smtp:
            self.assertFalse(send_email('Subject', 'Body', {'enable_email': False}))
        mock_smtp.assert_not_called()

    def test_missing_recipients(self):
        config = dict(self.config, email_to=[])
        self.assertFalse(send_email('Subject', 'Body', config))

    @patch('identity_sync.notifications.smtplib.SMTP')
    def test_send_email_with_starttls(self, mock_smtp):
        server = mock_smtp.return_value

        self.assertTrue(send_email('Subject', 'Body', self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@example.com', 'smtppass')
        server.sendmail.assert_called_once()
        server.quit.assert_called_once()

    @patch('identity_sync.notifications.smtplib.SMTP')
    def test_smtp_failure_returns_false(self, mock_smtp):
        mock_smtp.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b'bad credentials')

        self.assertFalse(send_email('Subject', 'Body', self.config))

    @patch('identity_sync.notifications.send_email')
    def test_failure_report_contents(self, mock_send):
        mock_send.return_value = True
        summary = make_summary(status=STATUS_FAILED, error='LDAP directory unavailable: timed out')

        self.assertTrue(send_run_failure_notification(summary, self.config))

        subject, body, _ = mock_send.call_args[0]
        self.assertEqual(subject, 'Identity Sync Alert: Reconciliation Failed')
        self.assertIn('Error: LDAP directory unavailable: timed out', body)
        self.assertIn('Skipped records: 2', body)
        self.assertIn('carol', body)

    @patch('identity_sync.notifications.send_email')
    def test_success_summary_respects_setting(self, mock_send):
        config = dict(self.config, email_on_success=False)

        self.assertFalse(send_run_summary(make_summary(), config))
        mock_send.assert_not_called()

    def test_format_runtime(self):
        self.assertEqual(format_runtime(4.5), '4.50 seconds')
        self.assertEqual(format_runtime(125.0), '2m 5.0s')


if __name__ == '__main__':
    unittest.main()
