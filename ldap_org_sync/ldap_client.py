"""
LDAP client for reading the source groups.

Connects to an LDAP / Active Directory server with ldap3, lists the members
of a group (memberOf reverse lookup with paging, or the group's ``member``
attribute) as ``SourceMember`` records, and reports account lockout for the
suspension filter.
"""

import logging
import ssl
from typing import Dict, Iterable, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from ldap_org_sync.models import SourceMember
from ldap_org_sync.retry import MaxRetriesExceeded, create_retry_callback, retry_call

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# userAccountControl ACCOUNTDISABLE flag
ACCOUNT_DISABLE = 0x2

DEFAULT_ATTRIBUTES = ['mail', 'objectClass', 'userAccountControl']


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPClient:
    """
    LDAP client for the members and owners groups.

    Supports both memberOf reverse lookup (Active Directory) and direct
    reading of the group ``member`` attribute.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary; an ``error_handling``
                entry supplies the connection retry settings
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.email_attribute = config.get('email_attribute', 'mail')
        self.use_memberof = config.get('use_memberof', True)

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def attributes(self) -> List[str]:
        attributes = list(DEFAULT_ATTRIBUTES)
        if self.email_attribute not in attributes:
            attributes.append(self.email_attribute)
        return attributes

    def connect(self) -> bool:
        """
        Bind to the LDAP server, retrying socket and bind failures.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        attempts = max(1, self.max_retries)
        try:
            retry_call(
                self._open_and_bind,
                max_attempts=attempts,
                delay=self.retry_wait,
                backoff=1.0,
                exceptions=(LDAPException,),
                on_retry=create_retry_callback("LDAP connection")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {attempts} attempts: {e.last_exception}"
            )

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self):
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not self.connection.open():
                raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPSocketOpenError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except LDAPException:
            self._drop_connection()
            raise

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind error on failed connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

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

    def list_group_members(self, group_dn: str) -> List[SourceMember]:
        """
        List the members of a group.

        Args:
            group_dn: Distinguished name of the group

        Returns:
            One SourceMember per entry carrying an email address

        Raises:
            LDAPQueryError: If the query fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        logger.info(f"Retrieving members of group: {group_dn}")

        try:
            if self.use_memberof:
                entries = self._search_memberof(group_dn)
            else:
                entries = self._read_group_member_attribute(group_dn)
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed: {e}")

        members = []
        seen = set()
        for entry in entries:
            member = self._to_source_member(entry)
            if member is None or member.email.lower() in seen:
                continue
            seen.add(member.email.lower())
            members.append(member)

        logger.info(f"Retrieved {len(members)} members of {group_dn}")
        return members

    def _paged_search(self, search_base: str, search_filter: str, attributes: List[str]) -> List[Any]:
        """Run a SUBTREE search following the paged results cookie."""
        entries = []
        cookie = None
        page_count = 0

        while True:
            kwargs = {
                'search_base': search_base,
                'search_filter': search_filter,
                'search_scope': SUBTREE,
                'attributes': attributes,
                'paged_size': self.page_size,
            }
            if cookie:
                kwargs['paged_cookie'] = cookie

            if not self.connection.search(**kwargs):
                if page_count == 0 and self.connection.result.get('result') not in (0, None):
                    raise LDAPQueryError(f"Search failed: {self.connection.result}")
                break

            page_count += 1
            entries.extend(self.connection.entries)
            logger.debug(f"Page {page_count}: retrieved {len(self.connection.entries)} entries")

            cookie = None
            controls = self.connection.result.get('controls') or {}
            paged = controls.get(PAGED_RESULTS_OID) if isinstance(controls, dict) else None
            if paged:
                cookie = paged.get('value', {}).get('cookie')
            if not cookie or not self.connection.entries:
                break

        return entries

    def _search_memberof(self, group_dn: str) -> List[Any]:
        search_filter = f"(&{self.user_filter}(memberOf={escape_filter_chars(group_dn)}))"
        search_base = self._get_domain_base()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")
        return self._paged_search(search_base, search_filter, self.attributes)

    def _read_group_member_attribute(self, group_dn: str) -> List[Any]:
        success = self.connection.search(
            search_base=group_dn,
            search_filter='(objectClass=*)',
            search_scope=BASE,
            attributes=['member']
        )
        if not success or not self.connection.entries:
            raise LDAPQueryError(f"Group not found: {group_dn}")

        group_entry = self.connection.entries[0]
        member_dns = group_entry.member.values if 'member' in group_entry else []
        logger.debug(f"Found {len(member_dns)} member DNs in {group_dn}")

        entries = []
        for member_dn in member_dns:
            try:
                found = self.connection.search(
                    search_base=member_dn,
                    search_filter='(objectClass=*)',
                    search_scope=BASE,
                    attributes=self.attributes
                )
            except LDAPException as e:
                logger.warning(f"Failed to read member {member_dn}: {e}")
                continue
            if found and self.connection.entries:
                entries.append(self.connection.entries[0])
        return entries

    def _to_source_member(self, entry) -> Optional[SourceMember]:
        """Map an LDAP entry onto a SourceMember, or None when it has no email."""
        # mail may be multi-valued; the first value is the primary address
        email = next((value for value in self._values(entry, self.email_attribute) if value), None)
        if not email:
            logger.debug(f"Skipping entry without {self.email_attribute}: {entry.entry_dn}")
            return None

        object_classes = [str(c).lower() for c in self._values(entry, 'objectClass')]
        account_type = 'computer' if 'computer' in object_classes else 'user'

        account_status = 'active'
        uac = self._value(entry, 'userAccountControl')
        if uac is not None:
            try:
                if int(uac) & ACCOUNT_DISABLE:
                    account_status = 'disabled'
            except (TypeError, ValueError):
                logger.debug(f"Unparseable userAccountControl on {entry.entry_dn}: {uac}")

        return SourceMember(email=str(email), account_type=account_type, account_status=account_status)

    @staticmethod
    def _value(entry, attribute: str):
        if attribute not in entry:
            return None
        return entry[attribute].value

    @staticmethod
    def _values(entry, attribute: str) -> List[Any]:
        if attribute not in entry:
            return []
        return list(entry[attribute].values)

    def get_suspension_status(self, emails: Iterable[str]) -> Dict[str, bool]:
        """
        Report whether each account is locked out.

        Active Directory sets ``lockoutTime`` above zero; OpenLDAP ppolicy sets
        ``pwdAccountLockedTime``.

        Returns:
            Mapping of lowercase email to suspended flag; emails not found are omitted
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        status = {}
        wanted = [email for email in emails if email]
        for email in wanted:
            search_filter = f"(&{self.user_filter}({self.email_attribute}={escape_filter_chars(email)}))"
            try:
                found = self.connection.search(
                    search_base=self._get_domain_base(),
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=['lockoutTime', 'pwdAccountLockedTime'],
                    size_limit=1
                )
            except LDAPException as e:
                raise LDAPQueryError(f"Suspension lookup failed for {email}: {e}")
            if not found or not self.connection.entries:
                continue

            entry = self.connection.entries[0]
            suspended = bool(self._value(entry, 'pwdAccountLockedTime'))
            lockout = self._value(entry, 'lockoutTime')
            if lockout is not None and not suspended:
                suspended = self._lockout_active(lockout)
            status[email.lower()] = suspended

        logger.debug(f"Suspension status read for {len(status)} of {len(wanted)} accounts")
        return status

    @staticmethod
    def _lockout_active(lockout) -> bool:
        # ldap3 may decode lockoutTime as a datetime; the epoch value means not locked
        if hasattr(lockout, 'year'):
            return lockout.year > 1601
        try:
            return int(lockout) > 0
        except (TypeError, ValueError):
            return False

    def _get_domain_base(self) -> str:
        """Base DN for user searches."""
        if self.user_base_dn:
            return self.user_base_dn

        if 'DC=' in self.bind_dn.upper():
            dc_parts = [part.strip() for part in self.bind_dn.split(',')
                        if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def validate_group_dn(self, group_dn: str) -> bool:
        """
        Validate that a group DN exists and is accessible.

        Returns:
            True if group exists and is accessible
        """
        if not self._connected:
            logger.error("Cannot validate group DN: not connected to LDAP server")
            return False

        try:
            success = self.connection.search(
                search_base=group_dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['objectClass'],
                size_limit=1
            )
        except LDAPException as e:
            logger.error(f"Failed to validate group DN {group_dn}: {e}")
            return False

        if success and self.connection.entries:
            logger.debug(f"Group DN validated: {group_dn}")
            return True
        logger.warning(f"Group DN not found or inaccessible: {group_dn}")
        return False

    def test_connection(self) -> bool:
        """Bind (if needed) and read the root DSE without raising."""
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

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
