"""
Application connector interface.

The reconciliation driver only talks to connectors through this interface.
Connectors compose a REST client, a target-state builder and the shared
reconcilers; they do not share an implementation.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from idm_sync.events import AuditSink
from idm_sync.models import DirectoryGroup, OrganizationRole, OrganizationStatistics


class ApplicationConnector(ABC):
    """A downstream application kept in sync with the identity directory."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Stable application id, also used in audit events."""

    @property
    @abstractmethod
    def display_name(self) -> str:
        pass

    @abstractmethod
    def group_search_filter(self) -> str:
        """Search string for the directory groups relevant to this application."""

    @abstractmethod
    def decode_group(self, group: DirectoryGroup) -> Optional[OrganizationRole]:
        pass

    @abstractmethod
    def sync(self, groups: List[DirectoryGroup], events: AuditSink) -> bool:
        """
        Reconcile the application with the given directory groups.

        Args:
            groups: Directory groups with resolved members
            events: Receiver of the audit events of this pass

        Returns:
            False if the pass did not complete cleanly
        """

    @abstractmethod
    def statistics(self) -> Optional[List[OrganizationStatistics]]:
        pass

    def close(self):
        """Release network resources."""
