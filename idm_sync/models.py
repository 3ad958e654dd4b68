"""
Domain model shared by the directory adapters, the target-state builder and
the application connectors.

Directory entities describe what the identity directory dictates, live
entities mirror the current state of a downstream application. Everything is
built fresh at the start of a reconciliation pass and discarded at its end.
"""

from typing import Dict, List, Any, Optional


class DirectoryUser:
    """A user record read from the identity directory."""

    def __init__(self, id: str, username: str, first_name: Optional[str] = None,
                 last_name: Optional[str] = None, email: Optional[str] = None,
                 attributes: Optional[Dict[str, List[str]]] = None):
        self.id = id
        self.username = username
        self.first_name = first_name
        self.last_name = last_name
        self.email = email
        self.attributes = attributes if attributes is not None else {}
        self.attributes_modified = False
        self.groups = []

    @property
    def name(self) -> str:
        """Full name, falling back to the username."""
        parts = [part for part in (self.first_name, self.last_name) if part]
        return ' '.join(parts) if parts else self.username

    def get_attribute(self, name: str) -> Optional[str]:
        """
        Get the first value of an attribute.

        Args:
            name: Attribute name

        Returns:
            First value or None if the attribute is missing or empty
        """
        values = self.attributes.get(name)
        if values:
            return values[0]
        return None

    def set_attribute(self, name: str, value: str) -> bool:
        """
        Replace an attribute with a single value.

        The user is only marked as modified when the stored value changes.

        Args:
            name: Attribute name
            value: New value

        Returns:
            True if the attribute was changed
        """
        if self.attributes.get(name) == [value]:
            return False
        self.attributes[name] = [value]
        self.attributes_modified = True
        return True

    def clear_modified(self):
        self.attributes_modified = False

    def __repr__(self):
        return f"DirectoryUser(username={self.username!r}, email={self.email!r})"


class DirectoryGroup:
    """A group record read from the identity directory."""

    def __init__(self, id: str, name: str, path: Optional[str] = None,
                 attributes: Optional[Dict[str, List[str]]] = None):
        self.id = id
        self.name = name
        self.path = path or name
        self.attributes = attributes if attributes is not None else {}
        self.members = []

    def add_member(self, user: DirectoryUser) -> bool:
        """Add a member, linking the user back to this group. Duplicates are ignored."""
        if any(member.username == user.username for member in self.members):
            return False
        self.members.append(user)
        if self not in user.groups:
            user.groups.append(self)
        return True

    def __repr__(self):
        return f"DirectoryGroup(name={self.name!r}, members={len(self.members)})"


class OrganizationRole:
    """Decoded meaning of one directory group: an organization unit and a permission."""

    def __init__(self, unit_name: str, permission):
        self.unit_name = unit_name
        self.permission = permission

    def __eq__(self, other):
        if not isinstance(other, OrganizationRole):
            return NotImplemented
        return self.unit_name == other.unit_name and self.permission == other.permission

    def __hash__(self):
        return hash((self.unit_name, self.permission))

    def __repr__(self):
        return f"OrganizationRole({self.unit_name!r}, {self.permission!r})"


class DesiredMember:
    """A username with the permission it should hold inside one organization unit."""

    def __init__(self, username: str, permission):
        self.username = username
        self.permission = permission

    def __repr__(self):
        return f"DesiredMember({self.username!r}, {self.permission!r})"


class DesiredOrganizationUnit:
    """The membership an organization unit should have after reconciliation."""

    def __init__(self, name: str):
        self.name = name
        self.members = {}

    def add_member(self, username: str, permission) -> DesiredMember:
        """
        Add a member, keeping the higher permission for duplicate claims.

        Args:
            username: Member username
            permission: Permission from a totally ordered enum

        Returns:
            The resolved DesiredMember
        """
        member = self.members.get(username)
        if member is None:
            member = DesiredMember(username, permission)
            self.members[username] = member
        elif permission > member.permission:
            member.permission = permission
        return member

    def is_member(self, username: str) -> bool:
        return username in self.members

    def permission_of(self, username: str):
        member = self.members.get(username)
        return member.permission if member else None

    def __repr__(self):
        return f"DesiredOrganizationUnit({self.name!r}, members={len(self.members)})"


class DesiredUser:
    """What an application account should look like for one directory user."""

    def __init__(self, username: str, first_name: Optional[str] = None,
                 last_name: Optional[str] = None, email: Optional[str] = None,
                 external_uid: Optional[str] = None,
                 directory_user: Optional[DirectoryUser] = None):
        self.username = username
        self.first_name = first_name
        self.last_name = last_name
        self.email = email
        self.external_uid = external_uid
        self.directory_user = directory_user

    @classmethod
    def from_directory_user(cls, user: DirectoryUser,
                            uid_attribute: Optional[str] = None) -> 'DesiredUser':
        external_uid = user.get_attribute(uid_attribute) if uid_attribute else None
        return cls(user.username, user.first_name, user.last_name, user.email,
                   external_uid, user)

    @property
    def name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return ' '.join(parts) if parts else self.username

    def __repr__(self):
        return f"DesiredUser({self.username!r})"


class TargetState:
    """Desired organization units and users for one application."""

    def __init__(self, units: Optional[Dict[str, DesiredOrganizationUnit]] = None,
                 users: Optional[Dict[str, DesiredUser]] = None):
        self.units = units if units is not None else {}
        self.users = users if users is not None else {}


class ExternalIdentity:
    """Link from an application account to an upstream SSO provider user ID."""

    def __init__(self, provider: str, extern_uid: str):
        self.provider = provider
        self.extern_uid = extern_uid

    def __eq__(self, other):
        if not isinstance(other, ExternalIdentity):
            return NotImplemented
        return self.provider == other.provider and self.extern_uid == other.extern_uid

    def __hash__(self):
        return hash((self.provider, self.extern_uid))

    def __repr__(self):
        return f"ExternalIdentity({self.provider!r}, {self.extern_uid!r})"


class LiveUser:
    """
    An account as it currently exists in a downstream application.

    ``active`` is False for every account that cannot sign in. ``blocked`` is
    only True for accounts this engine can reactivate; accounts disabled by
    the application itself (e.g. GitLab's ldap_blocked) are inactive but not
    blocked.
    """

    def __init__(self, id: str, username: str, email: Optional[str] = None,
                 name: Optional[str] = None, active: bool = True,
                 admin: bool = False, bot: bool = False,
                 identities: Optional[List[ExternalIdentity]] = None,
                 blocked: Optional[bool] = None):
        self.id = id
        self.username = username
        self.email = email
        self.name = name
        self.active = active
        self.blocked = (not active) if blocked is None else blocked
        self.admin = admin
        self.bot = bot
        self.identities = identities if identities is not None else []

    def block(self):
        self.active = False
        self.blocked = True

    def activate(self):
        self.active = True
        self.blocked = False

    def __repr__(self):
        state = 'active' if self.active else ('blocked' if self.blocked else 'inactive')
        return f"LiveUser({self.username!r}, id={self.id!r}, {state})"


class LiveOrganizationUnit:
    """An organization unit (GitLab group, Mattermost team) and its current members."""

    def __init__(self, id: str, name: str, parent_id: Optional[str] = None,
                 statistics: Optional[Dict[str, Any]] = None):
        self.id = id
        self.name = name
        self.parent_id = parent_id
        self.statistics = statistics if statistics is not None else {}
        self.members = {}
        self.permissions = {}

    def is_member(self, username: str) -> bool:
        return username in self.members

    def permission_of(self, username: str):
        return self.permissions.get(username)

    def add_member(self, user: LiveUser, permission):
        self.members[user.username] = user
        self.permissions[user.username] = permission

    def remove_member(self, username: str):
        self.members.pop(username, None)
        self.permissions.pop(username, None)

    def __repr__(self):
        return f"LiveOrganizationUnit({self.name!r}, id={self.id!r}, members={len(self.members)})"


class SubResource:
    """A resource nested below an organization unit, e.g. a project or a channel."""

    def __init__(self, id: str, name: str, kind: str):
        self.id = id
        self.name = name
        self.kind = kind

    def __repr__(self):
        return f"SubResource({self.kind}:{self.name!r}, id={self.id!r})"


class OrganizationStatistics:
    """Usage statistics for one organization unit."""

    def __init__(self, name: str, statistics: Optional[Dict[str, Any]] = None):
        self.name = name
        self.statistics = statistics if statistics is not None else {}

    def to_dict(self) -> Dict[str, Any]:
        return {'organization': self.name, 'statistics': dict(self.statistics)}
