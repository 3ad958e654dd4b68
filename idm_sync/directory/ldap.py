"""
LDAP identity directory.

This module connects to LDAP servers with ldap3, searches groups by name and
resolves their members through the group's member attribute.
"""

import ssl
import logging
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from idm_sync.directory.base import DirectoryError, IdentityDirectory
from idm_sync.models import DirectoryGroup, DirectoryUser
from idm_sync.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'


class LdapDirectory(IdentityDirectory):
    """
    Identity directory backed by an LDAP server.

    Group names are read from ``cn``. User attributes listed in
    ``user_attributes`` are loaded into DirectoryUser.attributes and can be
    written back, e.g. an attribute holding the GitLab user id.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize LDAP directory.

        Args:
            config: Directory configuration dictionary
            error_handling: Retry settings for the connection
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.group_base_dn = config['group_base_dn']
        self.group_filter = config.get('group_filter', '(objectClass=groupOfNames)')
        self.member_attribute = config.get('member_attribute', 'member')
        self.username_attribute = config.get('username_attribute', 'uid')
        self.user_attributes = list(config.get('user_attributes', []))
        self.page_size = config.get('page_size', 500)

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        error_handling = error_handling or {}
        self.max_retries = error_handling.get('max_retries', 3)
        self.retry_wait = error_handling.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._group_members = {}
        self._users = {}

    def authenticate(self) -> bool:
        """
        Connect and bind, retrying failed attempts.

        Returns:
            True if the bind succeeded
        """
        self.close()
        self._group_members = {}
        self._users = {}

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            retry_call(
                self._bind,
                max_attempts=max(1, self.max_retries),
                delay=self.retry_wait,
                exceptions=(LDAPException,),
                on_retry=create_retry_callback("LDAP bind")
            )
        except MaxRetriesExceeded as e:
            logger.error(f"Failed to connect to LDAP server {self.server_url}: {e}")
            return False
        except (LDAPException, DirectoryError) as e:
            logger.error(f"Failed to connect to LDAP server {self.server_url}: {e}")
            return False

        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _bind(self):
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        if not connection.open():
            raise LDAPException(f"Failed to open connection: {connection.result}")
        if self.start_tls and not self.use_ssl and not connection.start_tls():
            raise LDAPException(f"Failed to start TLS: {connection.result}")
        if not connection.bind():
            raise LDAPBindError(f"Bind failed: {connection.result}")
        self.connection = connection

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryError(f"Failed to create TLS configuration: {e}")

    def _paged_search(self, search_base: str, search_filter: str, attributes: List[str]) -> List[Any]:
        """Run a subtree search using the simple paged results control."""
        entries = []
        cookie = None
        while True:
            success = self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes,
                paged_size=self.page_size,
                paged_cookie=cookie
            )
            if not success:
                # ldap3 reports an empty result set as an unsuccessful search
                if self.connection.result.get('result', 0) != 0:
                    raise LDAPException(f"Search failed: {self.connection.result}")
                break
            entries.extend(self.connection.entries)

            controls = self.connection.result.get('controls') or {}
            cookie = controls.get(PAGED_RESULTS_CONTROL, {}).get('value', {}).get('cookie')
            if not cookie:
                break
        return entries

    def get_groups(self, search_filter: str) -> Optional[List[DirectoryGroup]]:
        if self.connection is None:
            logger.error("Not connected to LDAP server")
            return None

        ldap_filter = f"(&{self.group_filter}(cn=*{escape_filter_chars(search_filter)}*))"
        try:
            entries = self._paged_search(self.group_base_dn, ldap_filter, ['cn', self.member_attribute])
        except LDAPException as e:
            logger.error(f"LDAP group search '{ldap_filter}' failed: {e}")
            return None

        groups = []
        for entry in entries:
            values = entry.entry_attributes_as_dict
            names = values.get('cn') or []
            if not names:
                continue
            dn = str(entry.entry_dn)
            groups.append(DirectoryGroup(id=dn, name=str(names[0]), path=dn))
            self._group_members[dn] = [str(member) for member in values.get(self.member_attribute, [])]

        logger.info(f"Retrieved {len(groups)} LDAP groups for search '{search_filter}'")
        return groups

    def get_group_members(self, group: DirectoryGroup) -> Optional[List[DirectoryUser]]:
        if self.connection is None:
            logger.error("Not connected to LDAP server")
            return None

        members = []
        for member_dn in self._group_members.get(group.id, []):
            user = self._users.get(member_dn)
            if user is None:
                try:
                    user = self._read_user(member_dn)
                except LDAPException as e:
                    logger.error(f"Failed to read LDAP user {member_dn}: {e}")
                    return None
                if user is None:
                    continue
                self._users[member_dn] = user
            members.append(user)
        return members

    def _read_user(self, dn: str) -> Optional[DirectoryUser]:
        attributes = ['givenName', 'sn', 'mail', self.username_attribute] + self.user_attributes
        success = self.connection.search(
            search_base=dn,
            search_filter='(objectClass=*)',
            search_scope=BASE,
            attributes=attributes
        )
        if not success or not self.connection.entries:
            logger.warning(f"LDAP member {dn} not found")
            return None

        values = self.connection.entries[0].entry_attributes_as_dict
        usernames = values.get(self.username_attribute) or []
        if not usernames:
            logger.warning(f"LDAP member {dn} has no {self.username_attribute} - skipped")
            return None

        def first(name):
            found = values.get(name) or []
            return str(found[0]) if found else None

        user_attributes = {
            name: [str(value) for value in values.get(name) or []]
            for name in self.user_attributes if values.get(name)
        }
        return DirectoryUser(
            id=dn,
            username=str(usernames[0]),
            first_name=first('givenName'),
            last_name=first('sn'),
            email=first('mail'),
            attributes=user_attributes
        )

    def update_user_attributes(self, user: DirectoryUser, attributes: Dict[str, List[str]]) -> bool:
        changes = {name: [(MODIFY_REPLACE, values)] for name, values in attributes.items()}
        if not changes:
            return True
        try:
            if self.connection.modify(user.id, changes):
                return True
            logger.error(f"Failed to update attributes of {user.id}: {self.connection.result}")
        except LDAPException as e:
            logger.error(f"Failed to update attributes of {user.id}: {e}")
        return False

    def remove_required_actions(self, user: DirectoryUser) -> bool:
        logger.debug("LDAP has no required actions - nothing to remove")
        return True

    def close(self):
        """Close LDAP connection."""
        if self.connection:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self.connection = None
