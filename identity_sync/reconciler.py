"""
Reconciler: computes what has to change for local state to mirror the directory.

The reconciler is pure. Given the same snapshot and the same local identities
it always returns the same plan, in the same order, and it never touches
storage.
"""

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Set

from identity_sync.errors import DuplicateKeyError, MalformedRecordError, RecordError
from identity_sync.models import DirectoryRecord, LocalIdentity, ReconciliationPlan
from identity_sync.policy import INTEGER_FIELDS, FieldOwnershipPolicy

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Diffs a directory snapshot against local identities.

    Only fields the policy marks authoritative are compared or patched.
    Identities missing from the directory are deleted right away unless a grace
    period of ``missing_grace_cycles`` consecutive absences is configured, in
    which case they are marked missing until the period runs out.
    """

    def __init__(self, policy: Optional[FieldOwnershipPolicy] = None, missing_grace_cycles: int = 0):
        """
        Initialize reconciler.

        Args:
            policy: Field ownership policy
            missing_grace_cycles: Consecutive absences tolerated before deletion (0 deletes immediately)
        """
        if missing_grace_cycles < 0:
            raise ValueError("missing_grace_cycles must not be negative")
        self.policy = policy or FieldOwnershipPolicy()
        self.missing_grace_cycles = missing_grace_cycles

    def diff(self, snapshot: Sequence[DirectoryRecord],
             local_identities: Iterable[LocalIdentity]) -> ReconciliationPlan:
        """
        Compute the reconciliation plan for one run.

        Args:
            snapshot: Every directory record fetched for this run, in directory order
            local_identities: Every local identity, active or not

        Returns:
            Plan with creates, updates and deletes each sorted by key, and the
            record-level errors that excluded records from it
        """
        plan = ReconciliationPlan()
        directory, excluded = self._index_snapshot(snapshot, plan.errors)
        local = {identity.key: identity for identity in local_identities}

        for key in sorted(directory):
            record = directory[key]
            identity = local.get(key)
            if identity is None:
                plan.creates.append(record)
                continue

            patch = self._authoritative_patch(record, identity)
            if patch:
                plan.updates.append((key, patch))
            if not identity.is_active:
                plan.reactivates.append(key)
            elif identity.missing_from_directory:
                plan.restores.append(key)

        for key in sorted(local):
            identity = local[key]
            if not identity.is_active or key in directory or key in excluded:
                continue
            if self._grace_expired(identity):
                plan.deletes.append(key)
            else:
                plan.marks.append(key)

        logger.info(f"Reconciliation plan: {len(plan.creates)} creates, {len(plan.updates)} updates, "
                    f"{len(plan.deletes)} deletes, {len(plan.marks)} marked missing, "
                    f"{len(plan.restores)} restored, {len(plan.reactivates)} reactivated, "
                    f"{len(plan.errors)} record errors")
        return plan

    def _index_snapshot(self, snapshot: Sequence[DirectoryRecord], errors: List[RecordError]):
        """
        Index well-formed snapshot records by key.

        Returns:
            Tuple of (key -> record, keys excluded because of record errors)
        """
        occurrences = Counter(record.key for record in snapshot if self._usable_key(record.key))
        directory: Dict[str, DirectoryRecord] = {}
        excluded: Set[str] = set()
        reported: Set[str] = set()

        for record in snapshot:
            key = record.key
            if not self._usable_key(key):
                errors.append(MalformedRecordError(None, 'key', 'is missing'))
                continue

            if occurrences[key] > 1:
                if key not in reported:
                    reported.add(key)
                    excluded.add(key)
                    errors.append(DuplicateKeyError(key, occurrences[key]))
                    logger.warning(f"Duplicate directory key {key} ({occurrences[key]} records), skipping")
                continue

            error = self._validate(record)
            if error:
                excluded.add(key)
                errors.append(error)
                logger.warning(f"Malformed directory record {key}: {error.message}")
                continue

            directory[key] = record

        return directory, excluded

    def _usable_key(self, key) -> bool:
        return isinstance(key, str) and bool(key.strip())

    def _validate(self, record: DirectoryRecord) -> Optional[MalformedRecordError]:
        """Check the required authoritative fields of a record."""
        for name in self.policy.required_fields:
            value = getattr(record, name, None)
            if value is None or (isinstance(value, str) and not value.strip()):
                return MalformedRecordError(record.key, name, 'is missing')
            if name in INTEGER_FIELDS and (not isinstance(value, int) or isinstance(value, bool)):
                return MalformedRecordError(record.key, name, f'is not an integer: {value!r}')
        return None

    def _authoritative_patch(self, record: DirectoryRecord, identity: LocalIdentity) -> Dict:
        projected = self.policy.project_authoritative(record)
        patch = {}
        for name, value in projected.items():
            if identity.authoritative.get(name) != value:
                patch[name] = value
        return patch

    def _grace_expired(self, identity: LocalIdentity) -> bool:
        # This run's absence counts towards the grace period
        return identity.missing_cycles + 1 > self.missing_grace_cycles
