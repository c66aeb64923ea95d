#!/usr/bin/env python3
"""
Unit tests for the field ownership policy.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.config import ConfigurationError
from identity_sync.models import DirectoryRecord
from identity_sync.policy import (
    DEFAULT_AUTHORITATIVE_FIELDS,
    DEFAULT_PROTECTED_FIELDS,
    FieldOwnershipPolicy,
)


def make_record(**overrides):
    values = dict(
        key='alice',
        distinguished_name='uid=alice,ou=people,dc=example,dc=com',
        numeric_uid=1001,
        numeric_gid=1001,
        home_directory='/home/alice',
        login_shell='/bin/bash',
        display_name='Alice Example',
        email='alice@example.com',
    )
    values.update(overrides)
    return DirectoryRecord(**values)


class TestFieldOwnershipPolicy(unittest.TestCase):
    """Test cases for FieldOwnershipPolicy."""

    def test_default_ownership(self):
        policy = FieldOwnershipPolicy()

        self.assertEqual(policy.authoritative_fields, DEFAULT_AUTHORITATIVE_FIELDS)
        self.assertEqual(policy.protected_fields, DEFAULT_PROTECTED_FIELDS)
        self.assertTrue(policy.is_authoritative('numeric_uid'))
        self.assertFalse(policy.is_authoritative('email'))
        self.assertTrue(policy.is_protected('assigned_role'))
        self.assertFalse(policy.is_protected('login_shell'))

    def test_sets_are_disjoint(self):
        policy = FieldOwnershipPolicy()
        self.assertFalse(set(policy.authoritative_fields) & set(policy.protected_fields))

    def test_overlapping_sets_rejected(self):
        with self.assertRaises(ConfigurationError):
            FieldOwnershipPolicy(
                authoritative=list(DEFAULT_AUTHORITATIVE_FIELDS) + ['email'],
                protected=DEFAULT_PROTECTED_FIELDS,
            )

    def test_unknown_field_rejected(self):
        with self.assertRaises(ConfigurationError):
            FieldOwnershipPolicy(authoritative=['numeric_uid', 'favourite_colour'])

    def test_field_not_supplied_by_directory_cannot_be_authoritative(self):
        with self.assertRaises(ConfigurationError):
            FieldOwnershipPolicy(
                authoritative=list(DEFAULT_AUTHORITATIVE_FIELDS) + ['phone'],
                protected=['display_name', 'email', 'assigned_role'],
            )

    def test_override_moves_email_to_directory(self):
        policy = FieldOwnershipPolicy.from_config({
            'authoritative': list(DEFAULT_AUTHORITATIVE_FIELDS) + ['email'],
            'protected': ['display_name', 'phone', 'assigned_role'],
        })

        self.assertTrue(policy.is_authoritative('email'))
        self.assertFalse(policy.is_protected('email'))
        self.assertIn('email', policy.project_authoritative(make_record()))

    def test_from_config_empty_uses_defaults(self):
        policy = FieldOwnershipPolicy.from_config(None)
        self.assertEqual(policy.authoritative_fields, DEFAULT_AUTHORITATIVE_FIELDS)

    def test_project_authoritative_only_returns_directory_owned_fields(self):
        projected = FieldOwnershipPolicy().project_authoritative(make_record())

        self.assertEqual(set(projected), set(DEFAULT_AUTHORITATIVE_FIELDS))
        self.assertEqual(projected['numeric_uid'], 1001)
        self.assertNotIn('display_name', projected)
        self.assertNotIn('email', projected)

    def test_seed_protected_skips_empty_values(self):
        seed = FieldOwnershipPolicy().seed_protected(make_record(email=''))

        self.assertEqual(seed, {'display_name': 'Alice Example'})

    def test_required_fields_follow_authoritative_set(self):
        policy = FieldOwnershipPolicy(
            authoritative=['distinguished_name', 'numeric_uid', 'numeric_gid', 'home_directory'],
            protected=DEFAULT_PROTECTED_FIELDS,
        )
        self.assertNotIn('login_shell', policy.required_fields)
        self.assertIn('numeric_uid', policy.required_fields)


if __name__ == '__main__':
    unittest.main()
