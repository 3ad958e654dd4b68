"""
Permission orders of the supported applications.

Both orders are IntEnums so that the max-permission tie-break of the
target-state builder is a plain comparison.
"""

from enum import IntEnum
from typing import Type

from idm_sync.config import ConfigurationError


class GitLabPermission(IntEnum):
    """GitLab access levels. The value is the API's access_level."""

    NONE = 0
    GUEST = 10
    REPORTER = 20
    DEVELOPER = 30
    MAINTAINER = 40
    OWNER = 50
    ADMIN = 60

    @classmethod
    def from_access_level(cls, access_level: int) -> 'GitLabPermission':
        """
        Map an API access level to the closest permission not above it.

        GitLab also reports levels such as 5 (minimal access) that have no
        counterpart here.
        """
        result = cls.NONE
        for permission in cls:
            if permission.value <= int(access_level):
                result = permission
        return result


class TeamRole(IntEnum):
    """Mattermost team roles."""

    USER = 1
    ADMIN = 2

    @property
    def roles(self) -> str:
        """Mattermost role string for a team membership."""
        if self is TeamRole.ADMIN:
            return 'team_user team_admin'
        return 'team_user'

    @classmethod
    def from_roles(cls, roles: str) -> 'TeamRole':
        if roles and 'team_admin' in roles.split():
            return cls.ADMIN
        return cls.USER


def parse_permission(enum_class: Type[IntEnum], name: str):
    """
    Look up a permission by name, ignoring case.

    Args:
        enum_class: Permission enum to search
        name: Permission name as found in a directory group name

    Returns:
        Matching enum member

    Raises:
        ConfigurationError: If the name is not a known permission
    """
    try:
        return enum_class[name.strip().upper()]
    except (KeyError, AttributeError):
        valid = ', '.join(member.name for member in enum_class)
        raise ConfigurationError(
            f"Unknown {enum_class.__name__} '{name}' (valid values: {valid})")
