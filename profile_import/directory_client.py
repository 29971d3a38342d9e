"""
LDAP directory reader for user profile attributes.

This module provides functionality to connect to LDAP servers and retrieve
user entries with the regular and extension attributes selected for export.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Sequence
from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from profile_import.shaping import RawUserRecord

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'


class DirectoryUnavailable(Exception):
    """Raised when the directory cannot be reached or returns no usable records."""
    pass


class UserSelector:
    """Selects either every user or the users matching a search string."""

    def __init__(self, search_string: Optional[str] = None):
        self.search_string = search_string or None

    @classmethod
    def all(cls) -> 'UserSelector':
        return cls()

    @classmethod
    def search(cls, text: str) -> 'UserSelector':
        if not text or not text.strip():
            raise ValueError("Search string must not be empty")
        return cls(text.strip())

    @property
    def is_all(self) -> bool:
        return self.search_string is None

    def __repr__(self) -> str:
        return "UserSelector(all)" if self.is_all else f"UserSelector(search={self.search_string!r})"


class LDAPDirectoryReader:
    """
    LDAP client for reading user entries and their attributes.

    Connects once per run; connection and query failures are reported as
    DirectoryUnavailable without retrying.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory reader with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(&(objectClass=person)(objectClass=user))')
        self.search_attributes = config.get('search_attributes', ['cn', 'displayName', 'givenName', 'sn', 'mail'])

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

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> bool:
        """
        Establish connection to LDAP server.

        Returns:
            True if connection successful

        Raises:
            DirectoryUnavailable: If the server cannot be reached or the bind fails
        """
        try:
            tls_config = self._create_tls_config()
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except DirectoryUnavailable:
            raise
        except Exception as e:
            raise DirectoryUnavailable(f"Failed to create LDAP server: {e}")

        try:
            self.connection = Connection(
                self.server,
                user=self.bind_dn,
                password=self.bind_password,
                auto_bind=False,
                receive_timeout=self.receive_timeout
            )

            if not self.connection.open():
                raise DirectoryUnavailable(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise DirectoryUnavailable(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise DirectoryUnavailable(f"Bind failed: {self.connection.result}")

        except DirectoryUnavailable:
            self._discard_connection()
            raise
        except LDAPException as e:
            self._discard_connection()
            raise DirectoryUnavailable(f"Failed to connect to LDAP server {self.server_url}: {e}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding LDAP connection: {e}")
            self.connection = None

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
        except Exception as e:
            raise DirectoryUnavailable(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def build_filter(self, selector: UserSelector) -> str:
        """Combine the base user filter with the selector's search string."""
        if selector.is_all:
            return self.user_filter

        text = escape_filter_chars(selector.search_string)
        clauses = ''.join(f"({attr}={text}*)" for attr in self.search_attributes)
        return f"(&{self.user_filter}(|{clauses}))"

    def list_users(self,
                   selector: UserSelector,
                   attributes: Sequence[str],
                   extension_attributes: Sequence[str] = (),
                   identity_attribute: str = 'mail') -> List[RawUserRecord]:
        """
        Retrieve user entries with the requested attributes.

        Args:
            selector: Which users to return
            attributes: Regular attributes to read
            extension_attributes: Extension attributes to read
            identity_attribute: Attribute used as the import identity

        Returns:
            List of RawUserRecord in directory order

        Raises:
            DirectoryUnavailable: If the query fails or returns no entries
        """
        if not self._connected:
            raise DirectoryUnavailable("Not connected to LDAP server")

        regular = [identity_attribute] + [a for a in attributes if a != identity_attribute]
        requested = regular + [a for a in extension_attributes if a not in regular]
        search_filter = self.build_filter(selector)

        logger.info(f"Reading users with {selector}")
        try:
            entries = self._paged_search(search_filter, requested)
        except DirectoryUnavailable:
            raise
        except LDAPException as e:
            raise DirectoryUnavailable(f"LDAP query failed: {e}")

        records = [self._to_record(entry, regular, extension_attributes) for entry in entries]

        if not records:
            raise DirectoryUnavailable(f"Directory returned no users for {selector}")

        logger.info(f"Retrieved {len(records)} user entries")
        return records

    def _paged_search(self, search_filter: str, attributes: List[str]) -> list:
        """Run a paged subtree search and collect entries from every page."""
        search_base = self.user_base_dn or self._get_domain_base()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        entries = []
        cookie = None
        page_count = 0

        while True:
            success = self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes,
                paged_size=self.page_size,
                paged_cookie=cookie
            )
            if not success and self.connection.result.get('result') not in (0, None):
                raise DirectoryUnavailable(f"Search failed: {self.connection.result}")

            page_count += 1
            page_entries = list(self.connection.entries)
            entries.extend(page_entries)
            logger.debug(f"Page {page_count}: Retrieved {len(page_entries)} entries")

            cookie = self._next_page_cookie()
            if not cookie or not page_entries:
                break

        logger.debug(f"Retrieved {len(entries)} total entries across {page_count} pages")
        return entries

    def _next_page_cookie(self) -> Optional[bytes]:
        controls = self.connection.result.get('controls') or {}
        control = controls.get(PAGED_RESULTS_OID)
        if not control:
            return None
        return control.get('value', {}).get('cookie')

    def _to_record(self, entry, regular: Sequence[str], extensions: Sequence[str]) -> RawUserRecord:
        """Split an ldap3 entry into regular and extension attribute bags."""
        return RawUserRecord(
            attributes=self._read_values(entry, regular),
            extension_attributes=self._read_values(entry, extensions),
            dn=str(entry.entry_dn)
        )

    def _read_values(self, entry, names: Sequence[str]) -> Dict[str, Any]:
        values = {}
        for name in names:
            if name not in entry:
                continue
            value = entry[name].value
            if value is None or value == []:
                continue
            values[name] = value
        return values

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if self.user_base_dn:
            return self.user_base_dn

        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise DirectoryUnavailable("Cannot determine domain base DN")

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()

            return self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope='BASE',
                attributes=['namingContexts'],
                size_limit=1
            )
        except Exception as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
