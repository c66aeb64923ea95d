#!/usr/bin/env python3
"""
Unit tests for the retry policy.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.retry import MaxRetriesExceeded, RetryPolicy, is_retryable_error


class TestRetryPolicy(unittest.TestCase):

    def test_from_config(self):
        policy = RetryPolicy.from_config({'max_retries': 4, 'retry_wait_seconds': 2,
                                          'backoff_multiplier': 3, 'max_wait_seconds': 10})

        self.assertEqual(policy.max_attempts, 4)
        self.assertEqual(list(policy.waits()), [2.0, 6.0, 10])

    def test_from_config_always_allows_one_attempt(self):
        self.assertEqual(RetryPolicy.from_config({'max_retries': 0}).max_attempts, 1)
        self.assertEqual(RetryPolicy.from_config(None).max_attempts, 3)

    @patch('identity_sync.retry.time.sleep')
    def test_succeeds_after_transient_failures(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), 'ok'])
        policy = RetryPolicy(max_attempts=3, wait_seconds=2.0, backoff=2.0)

        result = policy.call(func, operation="LDAP connection")

        self.assertEqual(result, 'ok')
        self.assertEqual(func.call_count, 3)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [2.0, 4.0])

    @patch('identity_sync.retry.time.sleep')
    def test_gives_up_after_max_attempts(self, mock_sleep):
        error = ConnectionError("refused")
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as ctx:
            RetryPolicy(max_attempts=2, wait_seconds=0.1).call(func, operation="bind")

        self.assertEqual(ctx.exception.attempts, 2)
        self.assertIs(ctx.exception.last_exception, error)
        self.assertEqual(mock_sleep.call_count, 1)

    @patch('identity_sync.retry.time.sleep')
    def test_unlisted_exception_propagates(self, mock_sleep):
        func = Mock(side_effect=KeyError('boom'))

        with self.assertRaises(KeyError):
            RetryPolicy().call(func, operation="bind", retry_on=(ConnectionError,))
        mock_sleep.assert_not_called()

    @patch('identity_sync.retry.time.sleep')
    def test_permanent_error_raises_immediately(self, mock_sleep):
        func = Mock(side_effect=ValueError("invalid credentials"))

        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=5).call(func, operation="bind")
        self.assertEqual(func.call_count, 1)
        mock_sleep.assert_not_called()

    @patch('identity_sync.retry.time.sleep')
    def test_retries_are_logged(self, mock_sleep):
        func = Mock(side_effect=[TimeoutError("slow"), 'ok'])

        with self.assertLogs('identity_sync.retry', level='WARNING') as logs:
            RetryPolicy(max_attempts=2, wait_seconds=1).call(func, operation="LDAP connection")

        self.assertIn('LDAP connection failed on attempt 1', logs.output[0])


class TestIsRetryableError(unittest.TestCase):

    def test_network_errors_are_retryable(self):
        self.assertTrue(is_retryable_error(ConnectionError("reset")))
        self.assertTrue(is_retryable_error(TimeoutError()))
        self.assertTrue(is_retryable_error(Exception("socket receive timed out")))
        self.assertTrue(is_retryable_error(Exception("server is busy")))

    def test_other_errors_are_not(self):
        self.assertFalse(is_retryable_error(ValueError("invalid filter")))


if __name__ == '__main__':
    unittest.main()
