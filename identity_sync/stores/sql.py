"""
SQLAlchemy-backed local identity store.

Each mutating call runs in its own transaction: the session commits when the
call returns and rolls back on any exception, so a failed cascade delete
leaves the identity and all of its dependent rows in place.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import Engine, delete, func, select, update
from sqlalchemy.exc import DBAPIError, DisconnectionError
from sqlalchemy.orm import Session

from identity_sync.database import create_engine_from_config, create_schema, create_session_factory, pool_capacity
from identity_sync.errors import NotFoundError, ProtectedFieldError, StoreUnavailableError
from identity_sync.models import UNASSIGNED_ROLE, DirectoryRecord, LocalIdentity, current_datetime
from identity_sync.policy import FieldOwnershipPolicy
from identity_sync.schema import GroupMembershipRow, IdentityRow, RoleAssignmentRow
from identity_sync.stores.base import LocalIdentityStore

logger = logging.getLogger(__name__)


class SqlIdentityStore(LocalIdentityStore):
    """Local identity store on top of the ``users`` table and its dependents."""

    def __init__(self, engine: Engine, policy: Optional[FieldOwnershipPolicy] = None):
        """
        Initialize the store.

        Args:
            engine: SQLAlchemy engine for the identity database
            policy: Field ownership policy restricting what patches may touch
        """
        super().__init__(policy)
        self.engine = engine
        self._sessions = create_session_factory(engine)

    @classmethod
    def from_config(cls, config: Dict[str, Any],
                    policy: Optional[FieldOwnershipPolicy] = None) -> 'SqlIdentityStore':
        """Create the engine from the ``database`` section and ensure the schema exists."""
        engine = create_engine_from_config(config)
        create_schema(engine)
        return cls(engine, policy)

    @property
    def connection_capacity(self) -> Optional[int]:
        return pool_capacity(self.engine)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """Yield a session inside a transaction, translating connection loss."""
        try:
            with self._sessions.begin() as session:
                yield session
        except DisconnectionError as e:
            raise StoreUnavailableError(f"Lost connection to identity database: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise StoreUnavailableError(f"Lost connection to identity database: {e}") from e
            raise

    def _to_identity(self, row: IdentityRow) -> LocalIdentity:
        return LocalIdentity(
            key=row.key,
            authoritative={name: getattr(row, name) for name in self.policy.authoritative_fields},
            protected={name: getattr(row, name) for name in self.policy.protected_fields},
            is_active=row.is_active,
            missing_from_directory=row.missing_from_directory,
            missing_cycles=row.missing_cycles,
            last_reconciled_at=row.last_reconciled_at,
        )

    def _get_row(self, session: Session, key: str) -> IdentityRow:
        row = session.scalars(select(IdentityRow).where(IdentityRow.key == key)).one_or_none()
        if row is None:
            raise NotFoundError(key)
        return row

    def find_all(self, active_only: bool = False) -> List[LocalIdentity]:
        stmt = select(IdentityRow).order_by(IdentityRow.key)
        if active_only:
            stmt = stmt.where(IdentityRow.is_active.is_(True))
        with self._transaction() as session:
            return [self._to_identity(row) for row in session.scalars(stmt)]

    def find(self, key: str) -> LocalIdentity:
        """Return one identity by key, raising NotFoundError if absent."""
        with self._transaction() as session:
            return self._to_identity(self._get_row(session, key))

    def create(self, record: DirectoryRecord, seed: Optional[Dict[str, Any]] = None) -> LocalIdentity:
        now = current_datetime()
        values = self.policy.project_authoritative(record)
        for name, value in (seed or {}).items():
            # Seeds may only fill locally owned fields, and only here
            if self.policy.is_protected(name):
                values[name] = value
        values.setdefault('assigned_role', UNASSIGNED_ROLE)

        with self._transaction() as session:
            row = IdentityRow(
                key=record.key,
                is_active=True,
                missing_from_directory=False,
                missing_cycles=0,
                created_at=now,
                updated_at=now,
                last_reconciled_at=now,
                **values,
            )
            session.add(row)
            session.flush()
            return self._to_identity(row)

    def patch_authoritative(self, key: str, fields: Dict[str, Any],
                            reactivate: bool = False) -> LocalIdentity:
        rejected = [name for name in fields if not self.policy.is_authoritative(name)]
        if rejected:
            raise ProtectedFieldError(key, rejected)

        now = current_datetime()
        values = {getattr(IdentityRow, name): value for name, value in fields.items()}
        values[IdentityRow.updated_at] = now
        values[IdentityRow.last_reconciled_at] = now
        if reactivate:
            values[IdentityRow.is_active] = True
            values[IdentityRow.missing_from_directory] = False
            values[IdentityRow.missing_cycles] = 0

        with self._transaction() as session:
            row = self._get_row(session, key)
            session.execute(
                update(IdentityRow)
                .where(IdentityRow.id == row.id)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            session.refresh(row)
            return self._to_identity(row)

    def cascade_delete(self, key: str) -> bool:
        with self._transaction() as session:
            user_id = session.scalar(select(IdentityRow.id).where(IdentityRow.key == key))
            if user_id is None:
                return False
            self._delete_dependents(session, user_id)
            self._delete_identity_row(session, user_id)
        return True

    def _delete_dependents(self, session: Session, user_id: int) -> None:
        """Remove every row referencing the identity."""
        session.execute(delete(GroupMembershipRow).where(GroupMembershipRow.user_id == user_id))
        session.execute(delete(RoleAssignmentRow).where(RoleAssignmentRow.user_id == user_id))

    def _delete_identity_row(self, session: Session, user_id: int) -> None:
        session.execute(delete(IdentityRow).where(IdentityRow.id == user_id))

    def mark_missing(self, key: str) -> LocalIdentity:
        with self._transaction() as session:
            row = self._get_row(session, key)
            row.missing_from_directory = True
            row.missing_cycles = row.missing_cycles + 1
            row.updated_at = current_datetime()
            session.flush()
            return self._to_identity(row)

    def clear_missing(self, key: str) -> LocalIdentity:
        with self._transaction() as session:
            row = self._get_row(session, key)
            now = current_datetime()
            row.missing_from_directory = False
            row.missing_cycles = 0
            row.updated_at = now
            row.last_reconciled_at = now
            session.flush()
            return self._to_identity(row)

    def get_sync_status(self) -> Dict[str, Any]:
        """
        Summarize the identity table.

        Returns:
            Dictionary with total, active, inactive, assigned and missing
            counts plus the most recent reconciliation time
        """
        stmt = select(
            func.count(IdentityRow.id),
            func.count(IdentityRow.id).filter(IdentityRow.is_active.is_(True)),
            func.count(IdentityRow.id).filter(IdentityRow.is_active.is_(False)),
            func.count(IdentityRow.id).filter(IdentityRow.assigned_role != UNASSIGNED_ROLE),
            func.count(IdentityRow.id).filter(IdentityRow.missing_from_directory.is_(True)),
            func.max(IdentityRow.last_reconciled_at),
        )
        with self._transaction() as session:
            total, active, inactive, assigned, missing, last_sync = session.execute(stmt).one()
        return {
            'total_users': total,
            'active_users': active,
            'inactive_users': inactive,
            'assigned_users': assigned,
            'missing_from_directory': missing,
            'last_sync_time': last_sync.isoformat() if last_sync else None,
        }

    def check_protected_fields(self, key: str) -> List[str]:
        """
        List the protected fields of an identity that hold locally owned data.

        Returns:
            Field names, in policy order; empty if the identity does not exist
        """
        try:
            identity = self.find(key)
        except NotFoundError:
            return []

        holding = []
        for name, value in identity.protected.items():
            if name == 'assigned_role':
                if value and value != UNASSIGNED_ROLE:
                    holding.append(name)
            elif isinstance(value, str):
                if value.strip():
                    holding.append(name)
            elif value is not None:
                holding.append(name)
        return holding

    def close(self):
        self.engine.dispose()
