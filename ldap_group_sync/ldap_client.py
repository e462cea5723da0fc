"""
LDAP client for finding groups in a directory.

Groups can be found in two ways: by searching group entries directly, or by
reading a group attribute (such as memberOf) on user entries. Both passes can
be combined. The client also reads a single group's synchronization field by
DN.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Tuple

from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError, LDAPStartTLSError, LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

from ldap_group_sync.models import GroupSearchType, SEARCH_TYPE_GROUPS, SEARCH_TYPE_USERS
from ldap_group_sync.reconciler import OBJECTGUID_FIELD, get_field_value
from ldap_group_sync.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

RESULT_SUCCESS = 0
RESULT_SIZE_LIMIT_EXCEEDED = 4
RESULT_ADMIN_LIMIT_EXCEEDED = 11
RESULT_NO_SUCH_OBJECT = 32

LIMIT_RESULTS = (RESULT_SIZE_LIMIT_EXCEEDED, RESULT_ADMIN_LIMIT_EXCEEDED)


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _first_rdn_value(dn: str) -> str:
    """Return 'Admins' for 'CN=Admins,OU=Groups,DC=example,DC=com'."""
    try:
        return parse_dn(dn)[0][1]
    except (LDAPInvalidDnError, IndexError):
        return dn


class LDAPClient:
    """
    LDAP client used as the directory search provider of the group sync.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')
        self.base_dn = config.get('base_dn', '')

        # Group search settings
        self.group_search_type = GroupSearchType.from_config(config.get('group_search_type', 'groups'))
        self.group_condition = config.get('group_condition') or ''
        self.condition = config.get('condition') or ''
        self.group_field = config.get('group_field')
        self.sync_field = config.get('sync_field_group') or None

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
        self.size_limit = config.get('size_limit', 0)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Retries after the first attempt (uses config default if None)
            retry_wait: Seconds to wait between attempts (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all attempts
        """
        max_retries = self.max_retries if max_retries is None else max_retries
        retry_wait = self.retry_wait if retry_wait is None else retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}") from e

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=max_retries + 1,
                delay=retry_wait,
                exceptions=(LDAPException,),
                on_retry=create_retry_callback("LDAP connection")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}"
            ) from e.last_exception
        except Exception as e:
            raise LDAPConnectionError(f"Unexpected error during LDAP connection: {e}") from e

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self):
        """One connection attempt; the connection is released on failure."""
        self.connection = Connection(
            self.server,
            user=self.bind_dn or None,
            password=self.bind_password or None,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            self.connection.open()

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPStartTLSError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except Exception:
            self._release_connection()
            raise

    def _release_connection(self):
        if self.connection is None:
            return
        try:
            self.connection.unbind()
        except LDAPException as e:
            logger.debug(f"Error releasing LDAP connection: {e}")
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

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}") from e

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _ensure_connected(self):
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

    def _paged_search(self, search_base: str, search_filter: str,
                      attributes: List[str]) -> Tuple[List[Dict[str, Any]], bool]:
        """
        Run a paged subtree search.

        Returns:
            Tuple of (search result entries, limit exceeded flag). Entries found
            before a size limit was hit are kept.

        Raises:
            LDAPQueryError: On any failure other than a missing base or a size limit
        """
        entries = []
        limit_exceeded = False
        cookie = None
        page_count = 0

        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        while True:
            try:
                self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    size_limit=self.size_limit,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )
            except LDAPException as e:
                raise LDAPQueryError(f"LDAP search failed: {e}") from e

            result = self.connection.result or {}
            code = result.get('result', RESULT_SUCCESS)
            if code == RESULT_NO_SUCH_OBJECT:
                logger.debug(f"Search base not found: {search_base}")
                break
            if code in LIMIT_RESULTS:
                limit_exceeded = True
            elif code != RESULT_SUCCESS:
                raise LDAPQueryError(f"Search failed: {result.get('description')} {result.get('message', '')}".strip())

            page_count += 1
            entries.extend(r for r in (self.connection.response or []) if r.get('type') == 'searchResEntry')

            if limit_exceeded:
                break
            cookie = (result.get('controls') or {}).get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
            if not cookie:
                break

        logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages")
        return entries, limit_exceeded

    def _entry_attributes(self, entry: Dict[str, Any], fields: List[str]) -> Dict[str, List[Any]]:
        """Read fields from a search entry as lists; objectGUID is read raw."""
        attributes = {}
        formatted = {k.lower(): v for k, v in (entry.get('attributes') or {}).items()}
        raw = {k.lower(): v for k, v in (entry.get('raw_attributes') or {}).items()}
        for field in fields:
            key = field.lower()
            source = raw if key == OBJECTGUID_FIELD and key in raw else formatted
            if key in source:
                values = _as_list(source[key])
                if values:
                    attributes[field] = values
        return attributes

    def get_all_groups(self, filter: str = '', filter2: str = '',
                       order: str = 'DESC') -> Tuple[List[Dict[str, Any]], bool]:
        """
        Search the directory for groups.

        Args:
            filter: Filter for the group entry search (defaults to group_condition)
            filter2: Filter for the user entry search (defaults to condition)
            order: 'DESC' or 'ASC', ordering by DN

        Returns:
            Tuple of (group records, limit exceeded flag). Each record has
            'dn', 'cn' (list), 'search_type' ('groups' or 'users') and, for the
            group entry search, the sync field values when configured.

        Raises:
            LDAPQueryError: If a search fails
        """
        self._ensure_connected()

        groups = {}
        limit_exceeded = False

        if self.group_search_type != GroupSearchType.USERS:
            limit_exceeded |= self._search_groups_in_groups(filter, groups)
        if self.group_search_type != GroupSearchType.GROUPS:
            limit_exceeded |= self._search_groups_in_users(filter2, groups)

        if limit_exceeded:
            logger.warning("LDAP size limit exceeded, group list is incomplete")

        dns = sorted(groups, key=str.lower, reverse=str(order).upper() == 'DESC')
        logger.info(f"Found {len(dns)} groups in directory")
        return [groups[dn] for dn in dns], limit_exceeded

    def _search_groups_in_groups(self, search_filter: str, groups: Dict[str, Dict[str, Any]]) -> bool:
        search_filter = search_filter or self.group_condition or '(objectClass=*)'
        fields = ['cn']
        if self.sync_field:
            fields.append(self.sync_field)

        entries, limit_exceeded = self._paged_search(self.base_dn, search_filter, fields)
        for entry in entries:
            dn = entry['dn']
            if dn in groups:
                continue
            attributes = self._entry_attributes(entry, fields)
            record = {
                'dn': dn,
                'cn': attributes.pop('cn', [_first_rdn_value(dn)]),
                'search_type': SEARCH_TYPE_GROUPS,
            }
            record.update(attributes)
            groups[dn] = record
        return limit_exceeded

    def _search_groups_in_users(self, search_filter: str, groups: Dict[str, Dict[str, Any]]) -> bool:
        base_filter = search_filter or self.condition or '(objectClass=*)'
        search_filter = f"(&{base_filter}({self.group_field}=*))"

        entries, limit_exceeded = self._paged_search(self.base_dn, search_filter, [self.group_field])
        for entry in entries:
            attributes = self._entry_attributes(entry, [self.group_field])
            for group_dn in attributes.get(self.group_field, []):
                group_dn = str(group_dn)
                if group_dn in groups:
                    continue
                groups[group_dn] = {
                    'dn': group_dn,
                    'cn': [_first_rdn_value(group_dn)],
                    'search_type': SEARCH_TYPE_USERS,
                }
        return limit_exceeded

    def get_group_sync_field_by_dn(self, group_dn: str, sync_field: str) -> Optional[Any]:
        """
        Read the synchronization field of one group.

        Args:
            group_dn: Distinguished name of the group
            sync_field: Name of the synchronization attribute

        Returns:
            The field's scalar value, or None if the group does not exist or
            does not carry the field

        Raises:
            LDAPQueryError: If the lookup itself fails
        """
        self._ensure_connected()

        try:
            self.connection.search(
                search_base=group_dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=[sync_field]
            )
        except LDAPException as e:
            raise LDAPQueryError(f"Unable to get LDAP group having DN `{group_dn}`: {e}") from e

        result = self.connection.result or {}
        code = result.get('result', RESULT_SUCCESS)
        if code == RESULT_NO_SUCH_OBJECT:
            return None
        if code != RESULT_SUCCESS:
            raise LDAPQueryError(f"Unable to get LDAP group having DN `{group_dn}`: {result.get('description')}")

        entries = [r for r in (self.connection.response or []) if r.get('type') == 'searchResEntry']
        if not entries:
            return None

        attributes = self._entry_attributes(entries[0], [sync_field])
        if not attributes.get(sync_field):
            return None
        return get_field_value(attributes, sync_field)

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()

            return bool(self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts'],
                size_limit=1
            ))
        except (LDAPConnectionError, LDAPException) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def get_connection_stats(self) -> Dict[str, Any]:
        return {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'base_dn': self.base_dn,
            'group_search_type': self.group_search_type.name.lower(),
            'sync_field_group': self.sync_field,
            'page_size': self.page_size,
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
