"""
LDAP directory reader.

This module connects to an LDAP server and reads every POSIX account below
the configured base as a DirectoryRecord. It is the production
DirectorySnapshotReader; the reconciliation core never talks to ldap3
directly.
"""

import logging
import ssl
import threading
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError

from identity_sync.directory import DirectorySnapshotReader
from identity_sync.errors import DirectoryUnavailableError
from identity_sync.models import DirectoryRecord
from identity_sync.retry import MaxRetriesExceeded, RetryPolicy, is_retryable_error

logger = logging.getLogger(__name__)

PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'

# LDAP attribute -> DirectoryRecord field
ATTRIBUTE_MAPPING = {
    'uid': 'key',
    'uidNumber': 'numeric_uid',
    'gidNumber': 'numeric_gid',
    'homeDirectory': 'home_directory',
    'loginShell': 'login_shell',
    'displayName': 'display_name',
    'mail': 'email',
}

DEFAULT_ATTRIBUTES = list(ATTRIBUTE_MAPPING) + ['cn']


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPDirectoryReader(DirectorySnapshotReader):
    """
    Reads the full identity set of an LDAP directory.

    Every ``fetch_all`` opens its own connection and always closes it, so a
    reader can be shared by scheduled and manual runs.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP reader with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=posixAccount)')
        self.default_login_shell = config.get('default_login_shell', '/bin/bash')
        self.attributes = config.get('attributes', DEFAULT_ATTRIBUTES)

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_policy = RetryPolicy.from_config(error_config)

        self._lock = threading.Lock()
        self._open_connections = 0

    def fetch_all(self) -> List[DirectoryRecord]:
        """
        Fetch every POSIX account below the user base.

        The connection belongs to this call alone. A fetch abandoned after a
        timeout keeps running on its own connection and closes only that one.

        Returns:
            Directory records in search order

        Raises:
            DirectoryUnavailableError: If the directory cannot be reached or searched
        """
        connection = None
        try:
            connection = self.connect()
            return self._search_accounts(connection)
        except (LDAPConnectionError, LDAPException) as e:
            raise DirectoryUnavailableError(f"LDAP directory unavailable: {e}") from e
        finally:
            self.disconnect(connection)

    def connect(self) -> Connection:
        """
        Open and bind a new connection to the LDAP server, with retries.

        Returns:
            Bound connection; the caller must pass it to ``disconnect``

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        try:
            server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except (LDAPException, ValueError) as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            connection = self.retry_policy.call(
                lambda: self._open_and_bind(server),
                operation="LDAP connection",
                retry_on=(LDAPException, LDAPConnectionError, OSError),
                should_retry=self._should_retry,
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}"
            )
        except (LDAPException, OSError) as e:
            raise LDAPConnectionError(f"Failed to connect to LDAP: {e}")

        with self._lock:
            self._open_connections += 1
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return connection

    def _should_retry(self, error: Exception) -> bool:
        # Socket failures and rejected binds can both be a server restarting
        if isinstance(error, (LDAPSocketOpenError, LDAPBindError, LDAPConnectionError)):
            return True
        return is_retryable_error(error)

    def _open_and_bind(self, server: Server) -> Connection:
        """One connection attempt; leaves no half-open connection behind on failure."""
        connection = Connection(
            server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not connection.open():
                raise LDAPConnectionError(f"Failed to open connection: {connection.result}")

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
        except (LDAPException, LDAPConnectionError, OSError):
            self._unbind_quietly(connection)
            raise
        return connection

    def _unbind_quietly(self, connection: Connection) -> None:
        try:
            connection.unbind()
        except (LDAPException, OSError) as e:
            logger.debug(f"Ignoring error while dropping failed LDAP connection: {e}")

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except (LDAPException, OSError, ValueError) as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self, connection: Optional[Connection]) -> None:
        """Close a connection returned by ``connect``."""
        if connection is None:
            return
        try:
            connection.unbind()
            logger.debug("LDAP connection closed")
        except (LDAPException, OSError) as e:
            logger.warning(f"Error closing LDAP connection: {e}")
        finally:
            with self._lock:
                self._open_connections -= 1

    def _search_accounts(self, connection: Connection) -> List[DirectoryRecord]:
        """Run the paged account search on one connection and convert every entry."""
        search_base = self._get_search_base(connection.server)
        logger.debug(f"Searching with filter: {self.user_filter} in base: {search_base}")

        records = []
        page_count = 0
        cookie = None

        while True:
            search_args = dict(
                search_base=search_base,
                search_filter=self.user_filter,
                search_scope=SUBTREE,
                attributes=self.attributes,
                paged_size=self.page_size,
            )
            if cookie:
                search_args['paged_cookie'] = cookie

            if not connection.search(**search_args):
                # A failed page would make the snapshot partial; partial snapshots
                # look like mass deletions, so the whole fetch fails instead
                result = connection.result or {}
                if page_count == 0 and result.get('description') == 'noSuchObject':
                    break
                raise LDAPConnectionError(f"Search failed on page {page_count + 1}: {result}")

            page_count += 1
            page_records = [self._entry_to_record(entry) for entry in connection.entries]
            records.extend(page_records)
            logger.debug(f"Page {page_count}: Retrieved {len(page_records)} accounts")

            cookie = self._next_page_cookie(connection)
            if not cookie:
                break

        logger.info(f"Retrieved {len(records)} directory accounts across {page_count} pages")
        return records

    def _next_page_cookie(self, connection: Connection) -> Optional[bytes]:
        controls = (connection.result or {}).get('controls') or {}
        # ldap3 returns controls keyed by OID
        control = controls.get(PAGED_RESULTS_CONTROL) if isinstance(controls, dict) else None
        if not control:
            return None
        value = control.get('value') or {}
        return value.get('cookie') or None

    def _entry_to_record(self, entry) -> DirectoryRecord:
        """
        Convert an LDAP entry to a directory record.

        Values are passed through as found; validating them is the
        reconciler's job, so an entry with a broken uidNumber still reaches it
        and is reported instead of silently vanishing.
        """
        values = {}
        for ldap_attr, field_name in ATTRIBUTE_MAPPING.items():
            values[field_name] = self._attribute_value(entry, ldap_attr)

        for field_name in ('numeric_uid', 'numeric_gid'):
            values[field_name] = self._parse_int(values[field_name])

        if not values['login_shell']:
            values['login_shell'] = self.default_login_shell
        if not values['display_name']:
            values['display_name'] = self._attribute_value(entry, 'cn')

        return DirectoryRecord(distinguished_name=str(entry.entry_dn), **values)

    def _attribute_value(self, entry, name: str) -> Any:
        if name not in entry.entry_attributes:
            return None
        value = entry[name].value
        # Multi-valued attributes: the first value wins
        if isinstance(value, list):
            value = value[0] if value else None
        if value == '':
            return None
        return value

    def _parse_int(self, value: Any) -> Any:
        if value is None or isinstance(value, int):
            return value
        try:
            return int(str(value).strip())
        except ValueError:
            return value

    def _get_search_base(self, server: Optional[Server] = None) -> str:
        """Return the user base DN, falling back to the domain part of the bind DN."""
        if self.user_base_dn:
            return self.user_base_dn

        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        info = getattr(server, 'info', None)
        if info and info.naming_contexts:
            return info.naming_contexts[0]

        raise LDAPConnectionError("Cannot determine user base DN")

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        connection = None
        try:
            connection = self.connect()
            return connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope='BASE',
                attributes=['namingContexts'],
                size_limit=1
            )
        except (LDAPConnectionError, LDAPException) as e:
            logger.debug(f"Connection test failed: {e}")
            return False
        finally:
            self.disconnect(connection)

    def get_connection_stats(self) -> Dict[str, Any]:
        """Return connection settings for health reports."""
        return {
            'open_connections': self._open_connections,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'user_base_dn': self.user_base_dn,
            'page_size': self.page_size,
        }
