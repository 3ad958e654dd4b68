"""
Reconciliation of users and organization-unit memberships.

The algorithms in this module are shared by all application connectors. A
connector supplies the application-specific API operations through the
UserOperations and MembershipOperations interfaces and keeps everything else
(target-state building, pre-processing, statistics) to itself.

Live entities are updated in place after every successful write so that later
steps of the same pass observe the new state.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Iterable, Optional

from idm_sync import events
from idm_sync.events import AuditSink
from idm_sync.models import (
    DesiredOrganizationUnit, DesiredUser, LiveOrganizationUnit, LiveUser, SubResource
)

logger = logging.getLogger(__name__)

# Permission change strategies
REPLACE = 'replace'
UPDATE = 'update'


class UserOperations(ABC):
    """Account operations of one application."""

    @abstractmethod
    def create_user(self, user: DesiredUser) -> Optional[LiveUser]:
        """Create an account, returning None on failure."""

    @abstractmethod
    def activate_user(self, user: LiveUser) -> bool:
        """Unblock/reactivate an account."""

    @abstractmethod
    def deactivate_user(self, user: LiveUser) -> bool:
        """Block/deactivate an account."""

    @abstractmethod
    def is_protected(self, user: LiveUser) -> bool:
        """True for admin and bot accounts which are never blocked or removed."""


class MembershipOperations(ABC):
    """Organization-unit operations of one application."""

    @abstractmethod
    def create_unit(self, name: str) -> Optional[LiveOrganizationUnit]:
        pass

    @abstractmethod
    def add_member(self, unit: LiveOrganizationUnit, user: LiveUser, permission) -> bool:
        pass

    @abstractmethod
    def remove_member(self, unit: LiveOrganizationUnit, user: LiveUser) -> bool:
        pass

    @abstractmethod
    def is_protected(self, user: LiveUser) -> bool:
        pass

    def update_member_permission(self, unit: LiveOrganizationUnit, user: LiveUser, permission) -> bool:
        """Change a member's permission in place. Only needed for the update strategy."""
        raise NotImplementedError(f"{type(self).__name__} cannot update member permissions")

    def list_sub_resources(self, unit: LiveOrganizationUnit) -> Optional[List[SubResource]]:
        return []

    def list_sub_resource_members(self, resource: SubResource) -> Optional[List[LiveUser]]:
        return []

    def remove_sub_resource_member(self, resource: SubResource, user: LiveUser) -> bool:
        raise NotImplementedError(f"{type(self).__name__} has no sub-resources")


class UserReconciler:
    """Converges application accounts to the desired users."""

    def __init__(self, application_id: str, operations: UserOperations,
                 excluded_users: Iterable[str], events_sink: AuditSink,
                 user_id_attribute: Optional[str] = None,
                 provider_name: Optional[str] = None):
        """
        Initialize the reconciler.

        Args:
            application_id: Application id used in audit events
            operations: Account operations of the application
            excluded_users: Usernames never blocked
            events_sink: Receiver of audit events
            user_id_attribute: Directory attribute the application user id is written to
            provider_name: SSO provider name; when set, new accounts need an external UID
        """
        self.application_id = application_id
        self.operations = operations
        self.excluded_users = set(excluded_users)
        self.events = events_sink
        self.user_id_attribute = user_id_attribute
        self.provider_name = provider_name
        self.failures = 0

    def reconcile(self, live_users: List[LiveUser],
                  desired_users: Dict[str, DesiredUser]) -> Dict[str, LiveUser]:
        """
        Activate, create and block accounts.

        Args:
            live_users: Current application accounts
            desired_users: Desired accounts keyed by username

        Returns:
            The synced users keyed by username
        """
        self.failures = 0
        synced = {}
        live_usernames = {user.username for user in live_users}

        for user in live_users:
            desired = desired_users.get(user.username)
            if desired is None:
                continue
            if user.blocked:
                if not self.operations.activate_user(user):
                    logger.error(f"Failed to unblock user '{user.username}' in {self.application_id}")
                    self.failures += 1
                    continue
                user.activate()
                self.events.publish(events.user_unblocked(self.application_id, user))
                logger.info(f"Unblocked user '{user.username}' in {self.application_id}")
            synced[user.username] = user
            self._stamp_user_id(desired, user)

        for username, desired in desired_users.items():
            if username in live_usernames:
                continue
            if self.provider_name and not desired.external_uid:
                logger.warning(f"Skipping creation of user '{username}' in {self.application_id}: "
                               f"no external UID for provider '{self.provider_name}'")
                continue
            if not desired.email:
                logger.warning(f"Skipping creation of user '{username}' in {self.application_id}: no email")
                continue

            user = self.operations.create_user(desired)
            if user is None:
                logger.error(f"Failed to create user '{username}' in {self.application_id}")
                self.failures += 1
                continue
            synced[user.username] = user
            idp_user_id = desired.directory_user.id if desired.directory_user else None
            self.events.publish(events.user_created(self.application_id, user, idp_user_id))
            logger.info(f"Created user '{username}' in {self.application_id}")
            self._stamp_user_id(desired, user)

        for user in live_users:
            if user.username in desired_users:
                continue
            if user.username in self.excluded_users or self.operations.is_protected(user):
                continue
            if user.active:
                if not self.operations.deactivate_user(user):
                    logger.error(f"Failed to block user '{user.username}' in {self.application_id}")
                    self.failures += 1
                    continue
                user.block()
                self.events.publish(events.user_blocked(self.application_id, user))
                logger.info(f"Blocked user '{user.username}' in {self.application_id}")
            synced[user.username] = user

        return synced

    def _stamp_user_id(self, desired: DesiredUser, user: LiveUser):
        """Write the application's user id into the directory user."""
        if not self.user_id_attribute or desired.directory_user is None:
            return
        if desired.directory_user.set_attribute(self.user_id_attribute, str(user.id)):
            logger.debug(f"Updated {self.user_id_attribute} of '{desired.username}' to {user.id}")


class MembershipReconciler:
    """Converges organization-unit memberships to the desired units."""

    def __init__(self, application_id: str, operations: MembershipOperations,
                 excluded_users: Iterable[str], events_sink: AuditSink,
                 composite_type: str, permission_change: str = REPLACE,
                 clean_sub_resources: bool = False,
                 join_permission=None):
        """
        Initialize the reconciler.

        Args:
            application_id: Application id used in audit events
            operations: Membership operations of the application
            excluded_users: Usernames never removed
            events_sink: Receiver of audit events
            composite_type: Name of the unit type in audit events, e.g. 'group'
            permission_change: REPLACE removes and re-adds a member, UPDATE changes the role in place
            clean_sub_resources: Remove sub-resource members who are not unit members
            join_permission: Permission a new member always joins with; a higher desired
                permission is applied afterwards as a separate update (UPDATE strategy only)
        """
        if permission_change not in (REPLACE, UPDATE):
            raise ValueError(f"Unknown permission change strategy: {permission_change}")
        self.application_id = application_id
        self.operations = operations
        self.excluded_users = set(excluded_users)
        self.events = events_sink
        self.composite_type = composite_type
        self.permission_change = permission_change
        self.clean_sub_resources = clean_sub_resources
        self.join_permission = join_permission if permission_change == UPDATE else None
        self.failures = 0

    def reconcile(self, live_units: List[LiveOrganizationUnit],
                  desired_units: Dict[str, DesiredOrganizationUnit],
                  synced_users: Dict[str, LiveUser]) -> bool:
        """
        Create units and add, re-permission and remove members.

        Args:
            live_units: Current units with members
            desired_units: Desired units keyed by name
            synced_users: Result of the user reconciliation

        Returns:
            True if every write succeeded
        """
        self.failures = 0
        live_by_name = {unit.name: unit for unit in live_units}

        for name, desired in desired_units.items():
            unit = live_by_name.get(name)
            if unit is not None:
                self._sync_unit(unit, desired, synced_users)

        for name, desired in desired_units.items():
            if name in live_by_name:
                continue
            unit = self.operations.create_unit(name)
            if unit is None:
                logger.error(f"Failed to create {self.composite_type} '{name}' in {self.application_id}")
                self.failures += 1
                continue
            self.events.publish(events.composite_created(self.application_id, self.composite_type, unit))
            logger.info(f"Created {self.composite_type} '{name}' in {self.application_id}")
            for member in desired.members.values():
                user = synced_users.get(member.username)
                if user is None:
                    logger.debug(f"User '{member.username}' not synced - not added to '{name}'")
                    continue
                self._add(unit, user, member.permission)

        for unit in live_units:
            if unit.name in desired_units:
                continue
            for user in list(unit.members.values()):
                if not self._is_protected(user):
                    self._remove(unit, user)

        return self.failures == 0

    def _sync_unit(self, unit: LiveOrganizationUnit, desired: DesiredOrganizationUnit,
                   synced_users: Dict[str, LiveUser]):
        for member in desired.members.values():
            user = synced_users.get(member.username)
            if user is None:
                logger.debug(f"User '{member.username}' not synced - skipped for '{unit.name}'")
                continue
            if not unit.is_member(member.username):
                self._add(unit, user, member.permission)
            elif unit.permission_of(member.username) != member.permission:
                self._change_permission(unit, user, member.permission)

        for user in list(unit.members.values()):
            if self._is_protected(user):
                continue
            if user.blocked or not desired.is_member(user.username):
                self._remove(unit, user)

        if self.clean_sub_resources:
            self._clean_sub_resources(unit)

    def _is_protected(self, user: LiveUser) -> bool:
        return user.username in self.excluded_users or self.operations.is_protected(user)

    def _add(self, unit: LiveOrganizationUnit, user: LiveUser, permission) -> bool:
        joined_as = permission if self.join_permission is None else self.join_permission
        if not self.operations.add_member(unit, user, joined_as):
            logger.error(f"Failed to add '{user.username}' to {self.composite_type} '{unit.name}'")
            self.failures += 1
            return False
        unit.add_member(user, joined_as)
        self.events.publish(events.user_added(self.application_id, self.composite_type, unit, user, joined_as))
        logger.info(f"Added '{user.username}' to {self.composite_type} '{unit.name}' as {joined_as.name}")

        if joined_as != permission:
            self._change_permission(unit, user, permission)
        return True

    def _remove(self, unit: LiveOrganizationUnit, user: LiveUser) -> bool:
        if not self.operations.remove_member(unit, user):
            logger.error(f"Failed to remove '{user.username}' from {self.composite_type} '{unit.name}'")
            self.failures += 1
            return False
        unit.remove_member(user.username)
        self.events.publish(events.user_removed(self.application_id, self.composite_type, unit, user))
        logger.info(f"Removed '{user.username}' from {self.composite_type} '{unit.name}'")
        return True

    def _change_permission(self, unit: LiveOrganizationUnit, user: LiveUser, permission):
        if self.permission_change == UPDATE:
            if not self.operations.update_member_permission(unit, user, permission):
                logger.error(f"Failed to change role of '{user.username}' in "
                             f"{self.composite_type} '{unit.name}'")
                self.failures += 1
                return
            unit.add_member(user, permission)
            self.events.publish(events.user_updated(self.application_id, self.composite_type,
                                                    unit, user, permission))
            logger.info(f"Changed role of '{user.username}' in {self.composite_type} "
                        f"'{unit.name}' to {permission.name}")
            return

        if self._remove(unit, user):
            self._add(unit, user, permission)

    def _clean_sub_resources(self, unit: LiveOrganizationUnit):
        """Remove members of nested resources who are not members of the unit itself."""
        resources = self.operations.list_sub_resources(unit)
        if resources is None:
            logger.error(f"Failed to list sub-resources of {self.composite_type} '{unit.name}'")
            self.failures += 1
            return

        for resource in resources:
            members = self.operations.list_sub_resource_members(resource)
            if members is None:
                logger.error(f"Failed to list members of {resource.kind} '{resource.name}'")
                self.failures += 1
                continue
            for user in members:
                if unit.is_member(user.username) or self._is_protected(user):
                    continue
                if self.operations.remove_sub_resource_member(resource, user):
                    self.events.publish(events.user_removed(self.application_id, resource.kind,
                                                            resource, user))
                    logger.info(f"Removed '{user.username}' from {resource.kind} '{resource.name}'")
                else:
                    logger.error(f"Failed to remove '{user.username}' from {resource.kind} '{resource.name}'")
                    self.failures += 1
