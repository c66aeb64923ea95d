"""
Database tables for the local identity store.

Attribute names follow the identity field names used by the field ownership
policy; the underlying column names keep the historical ``users`` table layout.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from identity_sync.models import UNASSIGNED_ROLE

__all__ = [
    "SchemaBase",
    "IdentityRow",
    "RoleAssignmentRow",
    "GroupMembershipRow",
    "SyncLogRow",
]


class SchemaBase(DeclarativeBase):
    """Declarative base for the identity database schema."""


class IdentityRow(SchemaBase):
    """One local identity, keyed by its directory username."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column("username", String(100), unique=True, nullable=False)

    # Directory-owned
    distinguished_name: Mapped[Optional[str]] = mapped_column("ldap_dn", String(512))
    numeric_uid: Mapped[Optional[int]] = mapped_column("uid_number", Integer)
    numeric_gid: Mapped[Optional[int]] = mapped_column("gid_number", Integer)
    home_directory: Mapped[Optional[str]] = mapped_column(String(255))
    login_shell: Mapped[Optional[str]] = mapped_column(String(100))

    # Locally owned
    display_name: Mapped[Optional[str]] = mapped_column("full_name", String(200))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    assigned_role: Mapped[str] = mapped_column(
        "user_type", String(20), nullable=False, default=UNASSIGNED_ROLE
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    missing_from_directory: Mapped[bool] = mapped_column(
        "is_deleted_from_ldap", Boolean, nullable=False, default=False
    )
    missing_cycles: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_reconciled_at: Mapped[Optional[datetime]] = mapped_column("last_sync_at", DateTime)

    __table_args__ = (
        Index("idx_users_uid_number", "uid_number"),
        Index("idx_users_is_active", "is_active"),
        Index("idx_users_user_type", "user_type"),
    )


class RoleAssignmentRow(SchemaBase):
    """Links an identity to a business role (PI or student)."""

    __tablename__ = "role_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("idx_role_assignments_user", "user_id"),)


class GroupMembershipRow(SchemaBase):
    """Membership of an identity in a research group."""

    __tablename__ = "group_memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    group_name: Mapped[str] = mapped_column(String(200), nullable=False)
    gid_number: Mapped[Optional[int]] = mapped_column(Integer)
    joined_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("idx_group_memberships_user", "user_id"),)


class SyncLogRow(SchemaBase):
    """Audit record of one reconciliation run."""

    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    total_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deleted_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    marked_missing: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    restored_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reactivated_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[Optional[str]] = mapped_column(Text)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)

    __table_args__ = (Index("idx_sync_logs_started_at", "started_at", "id"),)
