#!/usr/bin/env python3
"""
Unit tests for group-name decoding and the permission orders.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from idm_sync.config import ConfigurationError, normalize_pattern
from idm_sync.decoder import GroupNameDecoder, GroupDecodeError
from idm_sync.models import OrganizationRole
from idm_sync.permissions import GitLabPermission, TeamRole, parse_permission

GITLAB_PATTERN = r'^APP_GIT_(?<groupPath>\w*?)_(?<permission>\w*)$'
MATTERMOST_PATTERN = r'^APP_MM_(?<teamName>\w+?)(?<teamAdmin>_ADMIN)?$'


class TestPermissions(unittest.TestCase):
    """Test cases for the permission enums."""

    def test_gitlab_permission_order(self):
        self.assertLess(GitLabPermission.GUEST, GitLabPermission.REPORTER)
        self.assertLess(GitLabPermission.DEVELOPER, GitLabPermission.MAINTAINER)
        self.assertEqual(max(GitLabPermission.OWNER, GitLabPermission.DEVELOPER), GitLabPermission.OWNER)

    def test_from_access_level(self):
        self.assertEqual(GitLabPermission.from_access_level(30), GitLabPermission.DEVELOPER)
        self.assertEqual(GitLabPermission.from_access_level(50), GitLabPermission.OWNER)
        self.assertEqual(GitLabPermission.from_access_level(5), GitLabPermission.NONE)

    def test_parse_permission_ignores_case(self):
        self.assertEqual(parse_permission(GitLabPermission, 'Maintainer'), GitLabPermission.MAINTAINER)
        self.assertEqual(parse_permission(GitLabPermission, 'developer'), GitLabPermission.DEVELOPER)

    def test_parse_unknown_permission_is_configuration_error(self):
        with self.assertRaises(ConfigurationError) as context:
            parse_permission(GitLabPermission, 'superuser')
        self.assertIn('superuser', str(context.exception))

    def test_team_roles(self):
        self.assertEqual(TeamRole.USER.roles, 'team_user')
        self.assertEqual(TeamRole.ADMIN.roles, 'team_user team_admin')
        self.assertEqual(TeamRole.from_roles('team_user team_admin'), TeamRole.ADMIN)
        self.assertEqual(TeamRole.from_roles('team_user'), TeamRole.USER)
        self.assertEqual(TeamRole.from_roles(''), TeamRole.USER)


class TestGroupNameDecoder(unittest.TestCase):
    """Test cases for GroupNameDecoder."""

    def setUp(self):
        self.gitlab = GroupNameDecoder(GITLAB_PATTERN, 'groupPath', 'permission',
                                       permission_enum=GitLabPermission)
        self.mattermost = GroupNameDecoder(MATTERMOST_PATTERN, 'teamName',
                                           admin_flag_group='teamAdmin',
                                           base_permission=TeamRole.USER,
                                           admin_permission=TeamRole.ADMIN)

    def test_normalize_java_named_groups(self):
        self.assertEqual(normalize_pattern('(?<name>a)(?:b)(?<=c)(?<!d)'), '(?P<name>a)(?:b)(?<=c)(?<!d)')

    def test_decode_permission_capture(self):
        role = self.gitlab.decode('APP_GIT_group1_Maintainer')
        self.assertEqual(role, OrganizationRole('group1', GitLabPermission.MAINTAINER))

    def test_decode_admin_flag(self):
        self.assertEqual(self.mattermost.decode('APP_MM_team1'), OrganizationRole('team1', TeamRole.USER))
        self.assertEqual(self.mattermost.decode('APP_MM_team1_ADMIN'), OrganizationRole('team1', TeamRole.ADMIN))

    def test_non_matching_name_is_ignored(self):
        self.assertIsNone(self.gitlab.decode('ADMINS'))
        self.assertIsNone(self.gitlab.decode(''))
        self.assertIsNone(self.gitlab.decode(None))

    def test_empty_capture_is_skipped(self):
        with self.assertLogs('idm_sync.decoder', level='WARNING'):
            self.assertIsNone(self.gitlab.decode('APP_GIT__Developer'))

    def test_empty_capture_in_strict_mode(self):
        decoder = GroupNameDecoder(GITLAB_PATTERN, 'groupPath', 'permission',
                                   permission_enum=GitLabPermission, strict=True)
        with self.assertRaises(GroupDecodeError):
            decoder.decode('APP_GIT_group1_')

    def test_unknown_permission_is_fatal(self):
        with self.assertRaises(ConfigurationError):
            self.gitlab.decode('APP_GIT_group1_Superuser')

    def test_missing_capture_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            GroupNameDecoder(r'^APP_GIT_(?<path>\w+)$', 'groupPath', 'permission',
                             permission_enum=GitLabPermission)

    def test_invalid_pattern_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            GroupNameDecoder(r'^APP_(?<groupPath>\w+', 'groupPath', base_permission=TeamRole.USER)

    def test_custom_permission_resolver(self):
        decoder = GroupNameDecoder(GITLAB_PATTERN, 'groupPath', 'permission',
                                   permission_resolver=lambda name: len(name))
        self.assertEqual(decoder.decode('APP_GIT_g_abc').permission, 3)


if __name__ == '__main__':
    unittest.main()
