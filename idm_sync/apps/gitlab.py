"""
GitLab integration.

GitLabClient wraps the GitLab REST API v4 (link-header pagination,
PRIVATE-TOKEN authentication). GitLabConnector maps directory groups named
like ``APP_GIT_<groupPath>_<permission>`` to top-level GitLab groups and
keeps users, group memberships and access levels in sync.
"""

import re
import secrets
import logging
from typing import Dict, List, Any, Optional

from idm_sync.apps.base import ApplicationConnector
from idm_sync.config import parse_excluded_users
from idm_sync.decoder import GroupNameDecoder
from idm_sync.events import AuditSink
from idm_sync.models import (
    DirectoryGroup, DesiredUser, ExternalIdentity, LiveOrganizationUnit, LiveUser,
    OrganizationRole, OrganizationStatistics, SubResource
)
from idm_sync.pagination import LinkHeaderPagination
from idm_sync.permissions import GitLabPermission
from idm_sync.reconcile import MembershipOperations, MembershipReconciler, UserOperations, UserReconciler, REPLACE
from idm_sync.rest_client import RestClient
from idm_sync.retry import RateLimitRetry
from idm_sync.target_state import TargetStateBuilder

logger = logging.getLogger(__name__)

BOT_USERNAME_PATTERNS = (
    re.compile(r'^project_\d+_bot\d*$'),
    re.compile(r'^group_\d+_bot\d*$'),
)

TEMP_OAUTH_EMAIL_PREFIX = 'temp-email-for-oauth-'
TEMP_OAUTH_EMAIL_SUFFIX = '@gitlab.localhost'


def user_from_json(data: Dict[str, Any]) -> LiveUser:
    """
    Convert a GitLab user or member object.

    Only the 'blocked' state can be reverted through the API. Other inactive
    states (ldap_blocked, deactivated, blocked_pending_approval) are left alone.
    """
    identities = [
        ExternalIdentity(identity.get('provider'), identity.get('extern_uid'))
        for identity in data.get('identities') or []
    ]
    state = data.get('state', 'active')
    return LiveUser(
        id=str(data['id']),
        username=data['username'],
        email=data.get('email'),
        name=data.get('name'),
        active=state == 'active',
        admin=bool(data.get('is_admin', False)),
        bot=bool(data.get('bot', False)),
        identities=identities,
        blocked=state == 'blocked'
    )


class GitLabClient:
    """Client for the GitLab REST API v4."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize GitLab client.

        Args:
            config: Application configuration dictionary
        """
        self.rest = RestClient(
            name='GitLab',
            server_url=config['server_url'],
            api_path='/api/v4',
            headers={'PRIVATE-TOKEN': config['token']},
            page_size=config.get('page_size', 100),
            pagination=LinkHeaderPagination('per_page'),
            retry_policy=RateLimitRetry(config.get('retry_wait_seconds', 1)),
            proxy_host=config.get('proxy_host'),
            proxy_port=config.get('proxy_port', 0),
            verify_ssl=config.get('verify_ssl', True),
            ca_cert_file=config.get('ca_cert_file'),
            timeout=config.get('timeout', 30)
        )

    def get_users(self) -> Optional[List[LiveUser]]:
        data = self.rest.read_list('/users')
        if data is None:
            return None
        return [user_from_json(user) for user in data]

    def get_groups_with_members(self, users_by_id: Optional[Dict[str, LiveUser]] = None,
                                with_statistics: bool = False) -> Optional[List[LiveOrganizationUnit]]:
        """
        Retrieve top-level groups and their direct members.

        Args:
            users_by_id: Known users; members are linked to these objects when possible
            with_statistics: Request group statistics (administrator token required)

        Returns:
            List of groups or None if any listing failed
        """
        users_by_id = users_by_id or {}
        data = self.rest.read_list('/groups', {'statistics': with_statistics} if with_statistics else None)
        if data is None:
            return None

        groups = []
        for group_data in data:
            if group_data.get('parent_id'):
                continue
            group = LiveOrganizationUnit(
                id=str(group_data['id']),
                name=group_data['path'],
                statistics=group_data.get('statistics') or {}
            )
            members = self.rest.read_list(f"/groups/{group.id}/members")
            if members is None:
                return None
            for member in members:
                user = users_by_id.get(str(member['id'])) or user_from_json(member)
                group.add_member(user, GitLabPermission.from_access_level(member.get('access_level', 0)))
            groups.append(group)
        return groups

    def create_group(self, path: str) -> Optional[LiveOrganizationUnit]:
        data = self.rest.write_for_object('POST', '/groups', body={
            'path': path,
            'name': path,
            'request_access_enabled': False,
            'share_with_group_lock': False,
        })
        if not data:
            return None
        return LiveOrganizationUnit(id=str(data['id']), name=data.get('path', path))

    def add_member_to_group(self, group: LiveOrganizationUnit, user: LiveUser,
                            permission: GitLabPermission) -> bool:
        return self.rest.write('POST', f"/groups/{group.id}/members",
                               body={'user_id': user.id, 'access_level': permission.value})

    def remove_member_from_group(self, group: LiveOrganizationUnit, user: LiveUser) -> bool:
        return self.rest.write('DELETE', f"/groups/{group.id}/members/{user.id}")

    def create_user(self, username: str, name: str, email: str,
                    provider: Optional[str] = None, extern_uid: Optional[str] = None) -> Optional[LiveUser]:
        body = {
            'username': username,
            'name': name,
            'email': email,
            'password': secrets.token_urlsafe(24),
            'skip_confirmation': True,
        }
        if provider and extern_uid:
            body['provider'] = provider
            body['extern_uid'] = extern_uid.lower()
        data = self.rest.write_for_object('POST', '/users', body=body)
        if not data:
            return None
        return user_from_json(data)

    def block_user(self, user: LiveUser) -> bool:
        return self.rest.write('POST', f"/users/{user.id}/block")

    def unblock_user(self, user: LiveUser) -> bool:
        return self.rest.write('POST', f"/users/{user.id}/unblock")

    def add_identity_to_user(self, user: LiveUser, identity: ExternalIdentity) -> bool:
        return self.rest.write('PUT', f"/users/{user.id}", body={
            'provider': identity.provider,
            'extern_uid': identity.extern_uid,
        })

    def delete_user(self, user: LiveUser, hard_delete: bool = True) -> bool:
        return self.rest.write('DELETE', f"/users/{user.id}", {'hard_delete': hard_delete})

    def get_group_projects(self, group: LiveOrganizationUnit) -> Optional[List[SubResource]]:
        data = self.rest.read_list(f"/groups/{group.id}/projects", {'with_shared': False})
        if data is None:
            return None
        return [SubResource(str(project['id']), project.get('path_with_namespace', project.get('path')), 'project')
                for project in data]

    def get_project_members(self, project: SubResource,
                            users_by_id: Optional[Dict[str, LiveUser]] = None) -> Optional[List[LiveUser]]:
        users_by_id = users_by_id or {}
        data = self.rest.read_list(f"/projects/{project.id}/members")
        if data is None:
            return None
        return [users_by_id.get(str(member['id'])) or user_from_json(member) for member in data]

    def remove_member_from_project(self, project: SubResource, user: LiveUser) -> bool:
        return self.rest.write('DELETE', f"/projects/{project.id}/members/{user.id}")

    def close(self):
        self.rest.close()


class GitLabConnector(ApplicationConnector, UserOperations, MembershipOperations):
    """Keeps GitLab users and top-level group memberships in sync with the directory."""

    APPLICATION_ID = 'gitlab'

    def __init__(self, config: Dict[str, Any], client: Optional[GitLabClient] = None,
                 strict_group_names: bool = False):
        """
        Initialize GitLab connector.

        Args:
            config: Application configuration dictionary
            client: Optional client, created from the configuration if omitted
            strict_group_names: Abort the pass on undecodable group names
        """
        self.config = config
        self.client = client or GitLabClient(config)
        self.excluded_users = parse_excluded_users(config.get('excluded_users', 'root,ghost'))
        self.provider_name = config.get('provider_name')
        self.provider_uid_attribute = config.get('provider_uid_attribute')
        self.user_id_attribute = config.get('user_id_attribute', 'GITLAB_USER_ID')
        self.remove_project_members = config.get('remove_sub_resource_members', False)

        self.decoder = GroupNameDecoder(
            config['group_pattern'],
            unit_group=config.get('unit_capture', 'groupPath'),
            permission_group=config.get('permission_capture', 'permission'),
            permission_enum=GitLabPermission,
            strict=strict_group_names
        )
        self.builder = TargetStateBuilder(self.decoder, self.provider_uid_attribute)
        self._users_by_id = {}

    @property
    def id(self) -> str:
        return self.APPLICATION_ID

    @property
    def display_name(self) -> str:
        return 'GitLab'

    def group_search_filter(self) -> str:
        return self.config['group_search']

    def decode_group(self, group: DirectoryGroup) -> Optional[OrganizationRole]:
        return self.decoder.decode(group.name)

    def sync(self, groups: List[DirectoryGroup], events: AuditSink) -> bool:
        state = self.builder.build(groups)
        logger.info(f"Syncing {len(state.users)} users and {len(state.units)} groups with GitLab")

        live_users = self.client.get_users()
        if live_users is None:
            logger.error("Could not retrieve GitLab users - skipping GitLab sync")
            return False

        live_users, merged_cleanly = self._merge_temporary_oauth_users(live_users)

        user_reconciler = UserReconciler(
            self.id, self, self.excluded_users, events,
            user_id_attribute=self.user_id_attribute,
            provider_name=self.provider_name
        )
        synced_users = user_reconciler.reconcile(live_users, state.users)

        self._users_by_id = {user.id: user for user in live_users}
        self._users_by_id.update({user.id: user for user in synced_users.values()})

        live_groups = self.client.get_groups_with_members(self._users_by_id)
        if live_groups is None:
            logger.error("Could not retrieve GitLab groups - skipping group sync")
            return False

        membership_reconciler = MembershipReconciler(
            self.id, self, self.excluded_users, events,
            composite_type='group',
            permission_change=REPLACE,
            clean_sub_resources=self.remove_project_members
        )
        memberships_ok = membership_reconciler.reconcile(live_groups, state.units, synced_users)

        return merged_cleanly and user_reconciler.failures == 0 and memberships_ok

    def _merge_temporary_oauth_users(self, users: List[LiveUser]):
        """
        Delete accounts GitLab provisioned with a temporary OAuth email.

        Such an account is a duplicate of an existing user whose username is the
        temporary account's username without its trailing digit. The external
        identities of the duplicate are moved to that primary account.

        Returns:
            Tuple of (remaining users, True if every API call succeeded)
        """
        by_username = {user.username: user for user in users}
        remaining = []
        clean = True

        for user in users:
            if not self._is_temporary_oauth_user(user):
                remaining.append(user)
                continue

            if not self.client.delete_user(user, hard_delete=True):
                logger.error(f"Failed to delete temporary OAuth user '{user.username}'")
                remaining.append(user)
                clean = False
                continue
            logger.info(f"Deleted temporary OAuth user '{user.username}'")

            primary = by_username.get(user.username[:-1])
            if primary is None:
                logger.warning(f"No primary user found for temporary OAuth user '{user.username}'")
                continue

            for identity in user.identities:
                if identity in primary.identities:
                    continue
                if self.client.add_identity_to_user(primary, identity):
                    primary.identities.append(identity)
                    logger.info(f"Added identity '{identity.provider}' to user '{primary.username}'")
                else:
                    logger.error(f"Failed to add identity '{identity.provider}' to user '{primary.username}'")
                    clean = False

        return remaining, clean

    @staticmethod
    def _is_temporary_oauth_user(user: LiveUser) -> bool:
        email = user.email or ''
        return email.startswith(TEMP_OAUTH_EMAIL_PREFIX) and email.endswith(TEMP_OAUTH_EMAIL_SUFFIX)

    # User operations

    def is_protected(self, user: LiveUser) -> bool:
        if user.admin or user.bot:
            return True
        return any(pattern.match(user.username) for pattern in BOT_USERNAME_PATTERNS)

    def create_user(self, user: DesiredUser) -> Optional[LiveUser]:
        return self.client.create_user(user.username, user.name, user.email,
                                       self.provider_name, user.external_uid)

    def activate_user(self, user: LiveUser) -> bool:
        return self.client.unblock_user(user)

    def deactivate_user(self, user: LiveUser) -> bool:
        return self.client.block_user(user)

    # Membership operations

    def create_unit(self, name: str) -> Optional[LiveOrganizationUnit]:
        return self.client.create_group(name)

    def add_member(self, unit: LiveOrganizationUnit, user: LiveUser, permission) -> bool:
        return self.client.add_member_to_group(unit, user, permission)

    def remove_member(self, unit: LiveOrganizationUnit, user: LiveUser) -> bool:
        return self.client.remove_member_from_group(unit, user)

    def list_sub_resources(self, unit: LiveOrganizationUnit) -> Optional[List[SubResource]]:
        return self.client.get_group_projects(unit)

    def list_sub_resource_members(self, resource: SubResource) -> Optional[List[LiveUser]]:
        return self.client.get_project_members(resource, self._users_by_id)

    def remove_sub_resource_member(self, resource: SubResource, user: LiveUser) -> bool:
        return self.client.remove_member_from_project(resource, user)

    def statistics(self) -> Optional[List[OrganizationStatistics]]:
        groups = self.client.get_groups_with_members(with_statistics=True)
        if groups is None:
            return None
        result = []
        for group in groups:
            stats = {'members': len(group.members)}
            stats.update(group.statistics)
            result.append(OrganizationStatistics(group.name, stats))
        return result

    def close(self):
        self.client.close()
