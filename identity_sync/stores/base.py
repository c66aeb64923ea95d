"""
Base local identity store interface.

This module defines the abstract base class that every local identity store
must implement. Stores own transactions: each mutating call is one atomic unit
of work, committed on success and rolled back on any failure.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from identity_sync.models import DirectoryRecord, LocalIdentity
from identity_sync.policy import FieldOwnershipPolicy

logger = logging.getLogger(__name__)


class LocalIdentityStore(ABC):
    """
    Abstract base class for local identity storage.

    Stores are keyed by the identity's stable username key. The authoritative
    sub-record may only be written through ``create`` and
    ``patch_authoritative``; the protected sub-record is never written by the
    reconciliation path except for optional seeding at creation.
    """

    def __init__(self, policy: Optional[FieldOwnershipPolicy] = None):
        """
        Initialize the store.

        Args:
            policy: Field ownership policy restricting what patches may touch
        """
        self.policy = policy or FieldOwnershipPolicy()

    @property
    def connection_capacity(self) -> Optional[int]:
        """Number of concurrent connections the store can serve, if bounded."""
        return None

    @abstractmethod
    def find_all(self, active_only: bool = False) -> List[LocalIdentity]:
        """
        Return local identities.

        Args:
            active_only: Only return identities flagged active

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    def create(self, record: DirectoryRecord, seed: Optional[Dict[str, Any]] = None) -> LocalIdentity:
        """
        Create an identity from a directory record.

        Args:
            record: Directory record supplying the authoritative fields
            seed: Protected values to set on first creation only

        Returns:
            The created identity
        """
        pass

    @abstractmethod
    def patch_authoritative(self, key: str, fields: Dict[str, Any],
                            reactivate: bool = False) -> LocalIdentity:
        """
        Update authoritative fields of one identity.

        Args:
            key: Identity key
            fields: Authoritative field values to write (may be empty)
            reactivate: Also mark the identity active again and clear its
                missing-from-directory state, in the same transaction

        Returns:
            The updated identity

        Raises:
            ProtectedFieldError: If fields names anything not authoritative
            NotFoundError: If no identity has this key
        """
        pass

    @abstractmethod
    def cascade_delete(self, key: str) -> bool:
        """
        Delete an identity together with every record that references it.

        Either everything is removed or nothing is.

        Returns:
            True if the identity existed and was removed
        """
        pass

    @abstractmethod
    def mark_missing(self, key: str) -> LocalIdentity:
        """Flag an identity as missing from the directory for one more cycle."""
        pass

    @abstractmethod
    def clear_missing(self, key: str) -> LocalIdentity:
        """Clear the missing-from-directory flag of an identity that reappeared."""
        pass

    def close(self):
        """Release any resources held by the store."""
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
