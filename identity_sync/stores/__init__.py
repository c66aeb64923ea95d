"""Local identity store implementations."""

from identity_sync.stores.base import LocalIdentityStore
from identity_sync.stores.sql import SqlIdentityStore

__all__ = ['LocalIdentityStore', 'SqlIdentityStore']
