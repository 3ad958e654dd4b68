#!/usr/bin/env python3
"""
Unit tests for target-state building.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from idm_sync.decoder import GroupNameDecoder
from idm_sync.models import DirectoryGroup, DirectoryUser
from idm_sync.permissions import GitLabPermission, TeamRole
from idm_sync.target_state import TargetStateBuilder


def make_group(name, *users):
    group = DirectoryGroup(id=name, name=name)
    for user in users:
        group.add_member(user)
    return group


class TestTargetStateBuilder(unittest.TestCase):
    """Test cases for TargetStateBuilder."""

    def setUp(self):
        self.decoder = GroupNameDecoder(r'^GIT_(?P<groupPath>\w+?)_(?P<permission>\w+)$',
                                        'groupPath', 'permission', permission_enum=GitLabPermission)
        self.alice = DirectoryUser('1', 'alice', 'Alice', 'Smith', 'alice@example.com',
                                   {'KEYCLOAK_ID': ['kc-1']})
        self.bob = DirectoryUser('2', 'bob', email='bob@example.com')

    def test_builds_units_and_users(self):
        builder = TargetStateBuilder(self.decoder, 'KEYCLOAK_ID')
        state = builder.build([
            make_group('GIT_acme_Developer', self.alice, self.bob),
            make_group('GIT_tools_Reporter', self.bob),
        ])

        self.assertEqual(set(state.units), {'acme', 'tools'})
        self.assertEqual(state.units['acme'].permission_of('alice'), GitLabPermission.DEVELOPER)
        self.assertEqual(state.units['tools'].permission_of('bob'), GitLabPermission.REPORTER)
        self.assertEqual(set(state.users), {'alice', 'bob'})
        self.assertEqual(state.users['alice'].external_uid, 'kc-1')
        self.assertIsNone(state.users['bob'].external_uid)
        self.assertIs(state.users['alice'].directory_user, self.alice)

    def test_highest_permission_wins(self):
        builder = TargetStateBuilder(self.decoder)
        for order in ([0, 1], [1, 0]):
            groups = [
                make_group('GIT_acme_Developer', self.alice),
                make_group('GIT_acme_Maintainer', self.alice),
            ]
            state = builder.build([groups[i] for i in order])
            self.assertEqual(state.units['acme'].permission_of('alice'), GitLabPermission.MAINTAINER)
            self.assertEqual(len(state.units['acme'].members), 1)

    def test_undecodable_groups_contribute_nothing(self):
        builder = TargetStateBuilder(self.decoder)
        state = builder.build([make_group('Administrators', self.alice)])
        self.assertEqual(state.units, {})
        self.assertEqual(state.users, {})

    def test_global_unit_contains_every_user(self):
        decoder = GroupNameDecoder(r'^MM_(?P<teamName>\w+?)(?P<teamAdmin>_ADMIN)?$', 'teamName',
                                   admin_flag_group='teamAdmin',
                                   base_permission=TeamRole.USER, admin_permission=TeamRole.ADMIN)
        builder = TargetStateBuilder(decoder, global_unit='everyone', base_permission=TeamRole.USER)
        state = builder.build([
            make_group('MM_dev_ADMIN', self.alice),
            make_group('MM_ops', self.bob),
        ])

        self.assertEqual(state.units['dev'].permission_of('alice'), TeamRole.ADMIN)
        self.assertEqual(set(state.units['everyone'].members), {'alice', 'bob'})
        self.assertEqual(state.units['everyone'].permission_of('alice'), TeamRole.USER)

    def test_global_unit_merges_with_decoded_unit(self):
        decoder = GroupNameDecoder(r'^MM_(?P<teamName>\w+?)(?P<teamAdmin>_ADMIN)?$', 'teamName',
                                   admin_flag_group='teamAdmin',
                                   base_permission=TeamRole.USER, admin_permission=TeamRole.ADMIN)
        builder = TargetStateBuilder(decoder, global_unit='everyone', base_permission=TeamRole.USER)
        state = builder.build([
            make_group('MM_everyone_ADMIN', self.alice),
            make_group('MM_ops', self.bob),
        ])

        self.assertEqual(state.units['everyone'].permission_of('alice'), TeamRole.ADMIN)
        self.assertEqual(state.units['everyone'].permission_of('bob'), TeamRole.USER)

    def test_global_unit_requires_base_permission(self):
        with self.assertRaises(ValueError):
            TargetStateBuilder(self.decoder, global_unit='everyone')


if __name__ == '__main__':
    unittest.main()
