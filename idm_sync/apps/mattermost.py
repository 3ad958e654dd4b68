"""
Mattermost integration.

MattermostClient wraps the Mattermost REST API v4 (page-index pagination,
Bearer token authentication). MattermostConnector maps directory groups to
Mattermost teams; an optional capture in the group name flags team admins.
"""

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
from idm_sync.pagination import OffsetPagination
from idm_sync.permissions import TeamRole
from idm_sync.reconcile import MembershipOperations, MembershipReconciler, UserOperations, UserReconciler, UPDATE
from idm_sync.rest_client import RestClient
from idm_sync.retry import RateLimitRetry
from idm_sync.target_state import TargetStateBuilder

logger = logging.getLogger(__name__)


def user_from_json(data: Dict[str, Any]) -> LiveUser:
    """Convert a Mattermost user object."""
    roles = (data.get('roles') or '').split()
    name = ' '.join(part for part in (data.get('first_name'), data.get('last_name')) if part)
    identities = []
    if data.get('auth_service'):
        identities.append(ExternalIdentity(data['auth_service'], data.get('auth_data')))
    return LiveUser(
        id=data['id'],
        username=data['username'],
        email=data.get('email'),
        name=name or None,
        active=not data.get('delete_at'),
        admin='system_admin' in roles,
        bot=bool(data.get('is_bot', False)),
        identities=identities
    )


class MattermostClient:
    """Client for the Mattermost REST API v4."""

    def __init__(self, config: Dict[str, Any]):
        self.rest = RestClient(
            name='Mattermost',
            server_url=config['server_url'],
            api_path='/api/v4',
            headers={'Authorization': f"Bearer {config['token']}"},
            page_size=config.get('page_size', 100),
            pagination=OffsetPagination('page', 'per_page', by_items=False),
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

    def get_teams_with_members(self, users_by_id: Dict[str, LiveUser]) -> Optional[List[LiveOrganizationUnit]]:
        """
        Retrieve teams and their members.

        Team member objects only carry user ids, so members are resolved via
        ``users_by_id``; unknown ids are skipped.

        Returns:
            List of teams or None if any listing failed
        """
        data = self.rest.read_list('/teams')
        if data is None:
            return None

        teams = []
        for team_data in data:
            if team_data.get('delete_at'):
                continue
            team = LiveOrganizationUnit(id=team_data['id'], name=team_data['name'])
            members = self.rest.read_list(f"/teams/{team.id}/members")
            if members is None:
                return None
            for member in members:
                if member.get('delete_at'):
                    continue
                user = users_by_id.get(member['user_id'])
                if user is None:
                    logger.debug(f"Unknown user id {member['user_id']} in team '{team.name}'")
                    continue
                team.add_member(user, TeamRole.from_roles(member.get('roles', '')))
            teams.append(team)
        return teams

    def create_team(self, name: str, display_name: Optional[str] = None) -> Optional[LiveOrganizationUnit]:
        data = self.rest.write_for_object('POST', '/teams', body={
            'name': name,
            'display_name': display_name or name,
            'type': 'I',
        })
        if not data:
            return None
        return LiveOrganizationUnit(id=data['id'], name=data.get('name', name))

    def add_member_to_team(self, team: LiveOrganizationUnit, user: LiveUser) -> bool:
        """Add a user to a team. New members always join with the team_user role."""
        return self.rest.write('POST', f"/teams/{team.id}/members",
                               body={'team_id': team.id, 'user_id': user.id})

    def update_member_roles(self, team: LiveOrganizationUnit, user: LiveUser, role: TeamRole) -> bool:
        return self.rest.write('PUT', f"/teams/{team.id}/members/{user.id}/roles",
                               body={'roles': role.roles})

    def remove_member_from_team(self, team: LiveOrganizationUnit, user: LiveUser) -> bool:
        return self.rest.write('DELETE', f"/teams/{team.id}/members/{user.id}")

    def create_user(self, username: str, first_name: Optional[str], last_name: Optional[str],
                    email: str, auth_service: Optional[str] = None,
                    auth_data: Optional[str] = None) -> Optional[LiveUser]:
        body = {
            'username': username,
            'email': email,
            'first_name': first_name or '',
            'last_name': last_name or '',
        }
        if auth_service and auth_data:
            body['auth_service'] = auth_service
            body['auth_data'] = auth_data
        else:
            body['password'] = secrets.token_urlsafe(24)
        data = self.rest.write_for_object('POST', '/users', body=body)
        if not data:
            return None
        return user_from_json(data)

    def update_user_active(self, user: LiveUser, active: bool) -> bool:
        return self.rest.write('PUT', f"/users/{user.id}/active", body={'active': active})

    def get_team_channels(self, team: LiveOrganizationUnit) -> Optional[List[Dict[str, Any]]]:
        return self.rest.read_list(f"/teams/{team.id}/channels")

    def get_channel_members(self, channel: SubResource) -> Optional[List[str]]:
        data = self.rest.read_list(f"/channels/{channel.id}/members")
        if data is None:
            return None
        return [member['user_id'] for member in data]

    def remove_member_from_channel(self, channel: SubResource, user: LiveUser) -> bool:
        return self.rest.write('DELETE', f"/channels/{channel.id}/members/{user.id}")

    def close(self):
        self.rest.close()


class MattermostConnector(ApplicationConnector, UserOperations, MembershipOperations):
    """Keeps Mattermost users and team memberships in sync with the directory."""

    APPLICATION_ID = 'mattermost'

    def __init__(self, config: Dict[str, Any], client: Optional[MattermostClient] = None,
                 strict_group_names: bool = False):
        self.config = config
        self.client = client or MattermostClient(config)
        self.excluded_users = parse_excluded_users(config.get('excluded_users', 'root,ghost'))
        self.auth_service = config.get('provider_name')
        self.auth_uid_attribute = config.get('provider_uid_attribute')
        self.user_id_attribute = config.get('user_id_attribute', 'MATTERMOST_USER_ID')
        self.remove_channel_members = config.get('remove_sub_resource_members', False)
        self.global_team = config.get('global_team')

        self.decoder = GroupNameDecoder(
            config['group_pattern'],
            unit_group=config.get('unit_capture', 'teamName'),
            admin_flag_group=config.get('admin_capture', 'teamAdmin'),
            base_permission=TeamRole.USER,
            admin_permission=TeamRole.ADMIN,
            strict=strict_group_names
        )
        self.builder = TargetStateBuilder(self.decoder, self.auth_uid_attribute,
                                          global_unit=self.global_team,
                                          base_permission=TeamRole.USER)
        self._users_by_id = {}

    @property
    def id(self) -> str:
        return self.APPLICATION_ID

    @property
    def display_name(self) -> str:
        return 'Mattermost'

    def group_search_filter(self) -> str:
        return self.config['group_search']

    def decode_group(self, group: DirectoryGroup) -> Optional[OrganizationRole]:
        return self.decoder.decode(group.name)

    def sync(self, groups: List[DirectoryGroup], events: AuditSink) -> bool:
        state = self.builder.build(groups)
        logger.info(f"Syncing {len(state.users)} users and {len(state.units)} teams with Mattermost")

        live_users = self.client.get_users()
        if live_users is None:
            logger.error("Could not retrieve Mattermost users - skipping Mattermost sync")
            return False

        user_reconciler = UserReconciler(
            self.id, self, self.excluded_users, events,
            user_id_attribute=self.user_id_attribute,
            provider_name=self.auth_service
        )
        synced_users = user_reconciler.reconcile(live_users, state.users)

        self._users_by_id = {user.id: user for user in live_users}
        self._users_by_id.update({user.id: user for user in synced_users.values()})

        live_teams = self.client.get_teams_with_members(self._users_by_id)
        if live_teams is None:
            logger.error("Could not retrieve Mattermost teams - skipping team sync")
            return False

        membership_reconciler = MembershipReconciler(
            self.id, self, self.excluded_users, events,
            composite_type='team',
            permission_change=UPDATE,
            clean_sub_resources=self.remove_channel_members,
            join_permission=TeamRole.USER
        )
        memberships_ok = membership_reconciler.reconcile(live_teams, state.units, synced_users)

        return user_reconciler.failures == 0 and memberships_ok

    # User operations

    def is_protected(self, user: LiveUser) -> bool:
        return user.admin or user.bot

    def create_user(self, user: DesiredUser) -> Optional[LiveUser]:
        return self.client.create_user(user.username, user.first_name, user.last_name, user.email,
                                       self.auth_service, user.external_uid)

    def activate_user(self, user: LiveUser) -> bool:
        return self.client.update_user_active(user, True)

    def deactivate_user(self, user: LiveUser) -> bool:
        return self.client.update_user_active(user, False)

    # Membership operations

    def create_unit(self, name: str) -> Optional[LiveOrganizationUnit]:
        return self.client.create_team(name)

    def add_member(self, unit: LiveOrganizationUnit, user: LiveUser, permission) -> bool:
        return self.client.add_member_to_team(unit, user)

    def remove_member(self, unit: LiveOrganizationUnit, user: LiveUser) -> bool:
        return self.client.remove_member_from_team(unit, user)

    def update_member_permission(self, unit: LiveOrganizationUnit, user: LiveUser, permission) -> bool:
        return self.client.update_member_roles(unit, user, permission)

    def list_sub_resources(self, unit: LiveOrganizationUnit) -> Optional[List[SubResource]]:
        channels = self.client.get_team_channels(unit)
        if channels is None:
            return None
        return [SubResource(channel['id'], channel.get('name'), 'channel') for channel in channels]

    def list_sub_resource_members(self, resource: SubResource) -> Optional[List[LiveUser]]:
        user_ids = self.client.get_channel_members(resource)
        if user_ids is None:
            return None
        members = []
        for user_id in user_ids:
            user = self._users_by_id.get(user_id)
            if user is None:
                logger.debug(f"Unknown user id {user_id} in channel '{resource.name}'")
                continue
            members.append(user)
        return members

    def remove_sub_resource_member(self, resource: SubResource, user: LiveUser) -> bool:
        return self.client.remove_member_from_channel(resource, user)

    def statistics(self) -> Optional[List[OrganizationStatistics]]:
        users = self.client.get_users()
        if users is None:
            return None
        teams = self.client.get_teams_with_members({user.id: user for user in users})
        if teams is None:
            return None

        result = []
        for team in teams:
            channels = self.client.get_team_channels(team)
            if channels is None:
                return None
            messages = 0
            busiest_channel, busiest_count = '', 0
            for channel in channels:
                count = int(channel.get('total_msg_count', 0) or 0)
                messages += count
                if count > busiest_count:
                    busiest_channel, busiest_count = channel.get('name', ''), count
            result.append(OrganizationStatistics(team.name, {
                'members': len(team.members),
                'channels': len(channels),
                'channel_with_most_messages': busiest_channel,
                'messages': messages,
            }))
        return result

    def close(self):
        self.client.close()
