"""
Group-name decoding.

Directory group names encode the organization unit and the permission a
group grants, e.g. ``APP_GIT_acme_Maintainer``. A configured regular
expression with named captures extracts both parts.
"""

import re
import logging
from typing import Callable, Optional

from idm_sync.config import ConfigurationError, normalize_pattern
from idm_sync.models import OrganizationRole
from idm_sync.permissions import parse_permission

logger = logging.getLogger(__name__)


class GroupDecodeError(Exception):
    """Raised for undecodable group names when strict decoding is enabled."""
    pass


class GroupNameDecoder:
    """
    Decodes directory group names into organization roles.

    Two decoding styles are supported:

    * a permission capture whose text names a permission of ``permission_enum``
      (GitLab: ``Maintainer``, ``Developer``...)
    * an optional admin-flag capture; the role is ``admin_permission`` when it
      matched and ``base_permission`` otherwise (Mattermost team admins)
    """

    def __init__(self, pattern: str, unit_group: str,
                 permission_group: Optional[str] = None,
                 permission_enum=None,
                 admin_flag_group: Optional[str] = None,
                 base_permission=None,
                 admin_permission=None,
                 strict: bool = False,
                 permission_resolver: Optional[Callable[[str], object]] = None):
        """
        Initialize the decoder.

        Args:
            pattern: Regular expression, Python or Java named-group syntax
            unit_group: Name of the capture holding the organization unit
            permission_group: Name of the capture holding the permission name
            permission_enum: Enum the permission name is looked up in
            admin_flag_group: Optional capture flagging an admin role
            base_permission: Role used when no permission capture is configured
            admin_permission: Role used when the admin-flag capture matched
            strict: Raise GroupDecodeError instead of skipping malformed names
            permission_resolver: Custom permission lookup, overrides permission_enum

        Raises:
            ConfigurationError: If the pattern is invalid or lacks the required captures
        """
        try:
            self.regex = re.compile(normalize_pattern(pattern))
        except re.error as e:
            raise ConfigurationError(f"Invalid group pattern '{pattern}': {e}")

        self.unit_group = unit_group
        self.permission_group = permission_group
        self.admin_flag_group = admin_flag_group
        self.base_permission = base_permission
        self.admin_permission = admin_permission
        self.strict = strict

        if permission_resolver is not None:
            self.permission_resolver = permission_resolver
        elif permission_enum is not None:
            self.permission_resolver = lambda name: parse_permission(permission_enum, name)
        else:
            self.permission_resolver = None

        required = [unit_group] + ([permission_group] if permission_group else [])
        missing = [name for name in required if name not in self.regex.groupindex]
        if missing:
            raise ConfigurationError(
                f"Group pattern '{pattern}' lacks named capture(s): {', '.join(missing)}")
        if permission_group and self.permission_resolver is None:
            raise ConfigurationError("A permission capture requires a permission lookup")
        if not permission_group and base_permission is None:
            raise ConfigurationError("A base permission is required without a permission capture")

    def decode(self, group_name: str) -> Optional[OrganizationRole]:
        """
        Decode a group display name.

        Args:
            group_name: Directory group display name

        Returns:
            OrganizationRole or None if the name does not describe a role

        Raises:
            GroupDecodeError: If a required capture is empty and strict mode is on
            ConfigurationError: If the permission name is unknown
        """
        if not group_name:
            return None

        match = self.regex.search(group_name)
        if not match:
            logger.debug(f"Group '{group_name}' does not match the group pattern")
            return None

        unit_name = match.group(self.unit_group)
        if not unit_name:
            return self._malformed(group_name, self.unit_group)

        if self.permission_group:
            permission_name = match.group(self.permission_group)
            if not permission_name:
                return self._malformed(group_name, self.permission_group)
            permission = self.permission_resolver(permission_name)
        elif self.admin_flag_group and match.groupdict().get(self.admin_flag_group):
            permission = self.admin_permission
        else:
            permission = self.base_permission

        return OrganizationRole(unit_name, permission)

    def _malformed(self, group_name: str, capture: str) -> None:
        message = f"Group '{group_name}' matches the group pattern but capture '{capture}' is empty"
        if self.strict:
            raise GroupDecodeError(message)
        logger.warning(f"{message} - skipping group")
        return None
