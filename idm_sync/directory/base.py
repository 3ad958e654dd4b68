"""
Identity directory interface.

A directory provides the groups and users the reconciliation pass is driven
by, and receives the attribute updates the connectors make to its users.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from idm_sync.models import DirectoryGroup, DirectoryUser


class DirectoryError(Exception):
    """Raised when the identity directory cannot be reached or queried."""
    pass


class IdentityDirectory(ABC):
    """Source of groups and users."""

    @abstractmethod
    def authenticate(self) -> bool:
        """Connect and authenticate. False abandons the reconciliation pass."""

    @abstractmethod
    def get_groups(self, search_filter: str) -> Optional[List[DirectoryGroup]]:
        """Groups matching the search filter, without members. None on failure."""

    @abstractmethod
    def get_group_members(self, group: DirectoryGroup) -> Optional[List[DirectoryUser]]:
        """Members of a group. None on failure."""

    @abstractmethod
    def update_user_attributes(self, user: DirectoryUser, attributes: Dict[str, List[str]]) -> bool:
        pass

    @abstractmethod
    def remove_required_actions(self, user: DirectoryUser) -> bool:
        """Clear pending required actions where the directory supports them."""

    def close(self):
        """Release connections."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
