"""
Keycloak identity directory.

Uses the Keycloak admin REST API with a confidential client
(client-credentials grant). Groups and members are listed with
``first``/``max`` offset pagination.
"""

import base64
import logging
from typing import Dict, List, Any, Optional

from idm_sync.directory.base import IdentityDirectory
from idm_sync.models import DirectoryGroup, DirectoryUser
from idm_sync.pagination import OffsetPagination
from idm_sync.rest_client import RestClient
from idm_sync.retry import RateLimitRetry

logger = logging.getLogger(__name__)


class KeycloakDirectory(IdentityDirectory):
    """Identity directory backed by a Keycloak realm."""

    def __init__(self, config: Dict[str, Any], rest: Optional[RestClient] = None):
        """
        Initialize Keycloak directory.

        Args:
            config: Directory configuration dictionary
            rest: Optional REST client, created from the configuration if omitted
        """
        self.config = config
        self.realm = config['realm']
        self.client_id = config['client_id']
        self.client_secret = config['client_secret']
        self.rest = rest or RestClient(
            name='Keycloak',
            server_url=config['server_url'],
            page_size=config.get('page_size', 100),
            pagination=OffsetPagination('first', 'max', by_items=True),
            retry_policy=RateLimitRetry(config.get('retry_wait_seconds', 1)),
            proxy_host=config.get('proxy_host'),
            proxy_port=config.get('proxy_port', 0),
            verify_ssl=config.get('verify_ssl', True),
            ca_cert_file=config.get('ca_cert_file'),
            timeout=config.get('timeout', 30)
        )
        self._users = {}

    @property
    def admin_path(self) -> str:
        return f"/admin/realms/{self.realm}"

    def authenticate(self) -> bool:
        """
        Obtain an access token with the client-credentials grant.

        Returns:
            True if a token was obtained
        """
        self._users = {}
        credentials = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
        data = self.rest.post_form(
            f"/realms/{self.realm}/protocol/openid-connect/token",
            {'grant_type': 'client_credentials'},
            headers={'Authorization': f"Basic {credentials}"}
        )
        token = data.get('access_token') if isinstance(data, dict) else None
        if not token:
            logger.error(f"Keycloak authentication failed for client '{self.client_id}'")
            return False

        self.rest.set_header('Authorization', f"Bearer {token}")
        logger.info(f"Authenticated with Keycloak realm '{self.realm}'")
        return True

    def get_groups(self, search_filter: str) -> Optional[List[DirectoryGroup]]:
        data = self.rest.read_list(f"{self.admin_path}/groups",
                                   {'search': search_filter, 'briefRepresentation': False})
        if data is None:
            return None

        groups = []
        self._collect_groups(data, groups)
        logger.info(f"Retrieved {len(groups)} Keycloak groups for search '{search_filter}'")
        return groups

    def _collect_groups(self, data: List[Dict[str, Any]], groups: List[DirectoryGroup]):
        for group_data in data:
            groups.append(DirectoryGroup(
                id=group_data['id'],
                name=group_data['name'],
                path=group_data.get('path'),
                attributes=group_data.get('attributes') or {}
            ))
            self._collect_groups(group_data.get('subGroups') or [], groups)

    def get_group_members(self, group: DirectoryGroup) -> Optional[List[DirectoryUser]]:
        data = self.rest.read_list(f"{self.admin_path}/groups/{group.id}/members",
                                   {'briefRepresentation': False})
        if data is None:
            return None
        return [self._to_user(user) for user in data]

    def _to_user(self, data: Dict[str, Any]) -> DirectoryUser:
        """Convert a user representation, reusing the object already seen in this pass."""
        user = self._users.get(data['id'])
        if user is None:
            user = DirectoryUser(
                id=data['id'],
                username=data['username'],
                first_name=data.get('firstName'),
                last_name=data.get('lastName'),
                email=data.get('email'),
                attributes=data.get('attributes') or {}
            )
            self._users[user.id] = user
        return user

    def update_user_attributes(self, user: DirectoryUser, attributes: Dict[str, List[str]]) -> bool:
        return self.rest.write('PUT', f"{self.admin_path}/users/{user.id}", body={'attributes': attributes})

    def remove_required_actions(self, user: DirectoryUser) -> bool:
        return self.rest.write('PUT', f"{self.admin_path}/users/{user.id}", body={'requiredActions': []})

    def close(self):
        self.rest.close()
