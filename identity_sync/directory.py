"""
Directory snapshot reader interface.

The reconciliation core only needs the full current identity set of the
directory for one run. Binding, searching and paging against the real
directory belong to the implementation (see ``identity_sync.ldap_client``).
"""

from abc import ABC, abstractmethod
from typing import List

from identity_sync.models import DirectoryRecord


class DirectorySnapshotReader(ABC):
    """Produces the complete set of directory identity records for one run."""

    @abstractmethod
    def fetch_all(self) -> List[DirectoryRecord]:
        """
        Fetch every identity currently in the directory.

        Returns:
            Directory records in directory order; duplicates are passed through

        Raises:
            DirectoryUnavailableError: If the directory cannot be read
        """
        pass
