"""
Target-state building.

Folds directory groups into the organization units and users an application
should have.
"""

import logging
from typing import List, Optional

from idm_sync.decoder import GroupNameDecoder
from idm_sync.models import DirectoryGroup, DesiredOrganizationUnit, DesiredUser, TargetState

logger = logging.getLogger(__name__)


class TargetStateBuilder:
    """Builds the desired state of one application from directory groups."""

    def __init__(self, decoder: GroupNameDecoder, provider_uid_attribute: Optional[str] = None,
                 global_unit: Optional[str] = None, base_permission=None):
        """
        Initialize the builder.

        Args:
            decoder: Decoder for the application's group names
            provider_uid_attribute: Directory attribute holding the SSO provider UID
            global_unit: Name of a unit every user is put into (chat teams only)
            base_permission: Permission used for the global unit
        """
        if global_unit and base_permission is None:
            raise ValueError("A global unit requires a base permission")
        self.decoder = decoder
        self.provider_uid_attribute = provider_uid_attribute
        self.global_unit = global_unit
        self.base_permission = base_permission

    def build(self, groups: List[DirectoryGroup]) -> TargetState:
        """
        Build the target state.

        Members claimed by several groups of the same unit get the highest of
        the decoded permissions.

        Args:
            groups: Directory groups with resolved members

        Returns:
            TargetState with desired units and users
        """
        state = TargetState()

        for group in groups:
            role = self.decoder.decode(group.name)
            if role is None:
                continue

            unit = state.units.get(role.unit_name)
            if unit is None:
                unit = DesiredOrganizationUnit(role.unit_name)
                state.units[role.unit_name] = unit

            for member in group.members:
                unit.add_member(member.username, role.permission)
                if member.username not in state.users:
                    state.users[member.username] = DesiredUser.from_directory_user(
                        member, self.provider_uid_attribute)

        if self.global_unit and state.users:
            unit = state.units.get(self.global_unit)
            if unit is None:
                unit = DesiredOrganizationUnit(self.global_unit)
                state.units[self.global_unit] = unit
            for username in state.users:
                unit.add_member(username, self.base_permission)

        logger.debug(f"Target state: {len(state.units)} units, {len(state.users)} users")
        return state
