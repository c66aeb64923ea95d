"""
Field ownership policy for identity attributes.

Every identity attribute is owned either by the directory (authoritative) or by
local business logic (protected). Reconciliation consults this table, never a
hard-coded field list, to decide what it may compare and write.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from identity_sync.config import ConfigurationError
from identity_sync.models import DirectoryRecord

logger = logging.getLogger(__name__)

# Column order of the identity row; every known attribute appears exactly once
IDENTITY_FIELDS: Tuple[str, ...] = (
    'distinguished_name',
    'numeric_uid',
    'numeric_gid',
    'home_directory',
    'login_shell',
    'display_name',
    'email',
    'phone',
    'assigned_role',
)

DEFAULT_AUTHORITATIVE_FIELDS: Tuple[str, ...] = (
    'distinguished_name',
    'numeric_uid',
    'numeric_gid',
    'home_directory',
    'login_shell',
)

DEFAULT_PROTECTED_FIELDS: Tuple[str, ...] = (
    'display_name',
    'email',
    'phone',
    'assigned_role',
)

# Attributes every directory identity must carry when the directory owns them
REQUIRED_DIRECTORY_FIELDS: Tuple[str, ...] = DEFAULT_AUTHORITATIVE_FIELDS

INTEGER_FIELDS: Tuple[str, ...] = ('numeric_uid', 'numeric_gid')

# Attributes a DirectoryRecord can carry at all
DIRECTORY_SUPPLIED_FIELDS: Tuple[str, ...] = DEFAULT_AUTHORITATIVE_FIELDS + ('display_name', 'email')


class FieldOwnershipPolicy:
    """
    Declarative table of which identity attributes reconciliation may touch.

    The policy is immutable once built. Fields listed in neither set are
    treated as not authoritative, so reconciliation leaves them alone.
    """

    def __init__(self, authoritative: Optional[Iterable[str]] = None,
                 protected: Optional[Iterable[str]] = None):
        """
        Build a policy.

        Args:
            authoritative: Directory-owned fields (defaults to the directory's POSIX attributes)
            protected: Locally owned fields (defaults to name, email, phone and role)

        Raises:
            ConfigurationError: If a field is unknown or listed as both
        """
        authoritative = set(DEFAULT_AUTHORITATIVE_FIELDS if authoritative is None else authoritative)
        protected = set(DEFAULT_PROTECTED_FIELDS if protected is None else protected)

        errors = []
        for name in sorted(authoritative | protected):
            if name not in IDENTITY_FIELDS:
                errors.append(f"Unknown identity field: {name}")
        for name in sorted(authoritative & protected):
            errors.append(f"Field cannot be both authoritative and protected: {name}")
        for name in sorted(authoritative):
            if name in IDENTITY_FIELDS and name not in DIRECTORY_SUPPLIED_FIELDS:
                errors.append(f"Field is never supplied by the directory: {name}")
        if errors:
            raise ConfigurationError("Invalid field ownership:\n" + "\n".join(f"  - {e}" for e in errors))

        self._authoritative = tuple(f for f in IDENTITY_FIELDS if f in authoritative)
        self._protected = tuple(f for f in IDENTITY_FIELDS if f in protected)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> 'FieldOwnershipPolicy':
        """
        Build a policy from the ``reconciliation.field_ownership`` section.

        Missing lists fall back to the defaults.
        """
        config = config or {}
        policy = cls(config.get('authoritative'), config.get('protected'))
        if config:
            logger.info(f"Field ownership override: authoritative={list(policy.authoritative_fields)}, "
                        f"protected={list(policy.protected_fields)}")
        return policy

    @property
    def authoritative_fields(self) -> Tuple[str, ...]:
        return self._authoritative

    @property
    def protected_fields(self) -> Tuple[str, ...]:
        return self._protected

    @property
    def required_fields(self) -> Tuple[str, ...]:
        """Authoritative fields a directory record must carry to be usable."""
        return tuple(f for f in self._authoritative if f in REQUIRED_DIRECTORY_FIELDS)

    def is_authoritative(self, field_name: str) -> bool:
        return field_name in self._authoritative

    def is_protected(self, field_name: str) -> bool:
        return field_name in self._protected

    def project_authoritative(self, record: DirectoryRecord) -> Dict[str, Any]:
        """Return the authoritative field set a directory record defines."""
        return {name: getattr(record, name, None) for name in self._authoritative}

    def seed_protected(self, record: DirectoryRecord) -> Dict[str, Any]:
        """
        Return protected values a directory record may seed at first creation.

        Only non-empty values are returned; nothing here is ever used on update.
        """
        seed = {}
        for name in self._protected:
            value = getattr(record, name, None)
            if value not in (None, ''):
                seed[name] = value
        return seed

    def __repr__(self):
        return (f"FieldOwnershipPolicy(authoritative={list(self._authoritative)}, "
                f"protected={list(self._protected)})")
