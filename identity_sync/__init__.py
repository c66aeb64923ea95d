"""
Identity Sync - Reconcile directory identities into a local identity store.

This package keeps a local identity table in step with an LDAP directory:
directory-owned fields are created, patched and deleted to match the
directory, while locally owned fields are never overwritten.
"""

__version__ = "1.0.0"
__author__ = "Identity Sync Team"
