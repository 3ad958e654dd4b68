#!/usr/bin/env python3
"""
Unit tests for user and membership reconciliation.

The reconcilers run against an in-memory application that records every
write, so the tests can check both the resulting state and the audit trail.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from idm_sync.events import EventType, InMemoryAuditSink
from idm_sync.models import (
    DesiredOrganizationUnit, DesiredUser, DirectoryUser, LiveOrganizationUnit, LiveUser, SubResource
)
from idm_sync.permissions import GitLabPermission, TeamRole
from idm_sync.reconcile import (
    MembershipOperations, MembershipReconciler, UserOperations, UserReconciler, REPLACE, UPDATE
)


class FakeApplication(UserOperations, MembershipOperations):
    """In-memory application recording every write."""

    def __init__(self):
        self.calls = []
        self.failing = set()
        self.next_id = 100
        self.sub_resources = {}
        self.sub_resource_members = {}

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        return name not in self.failing

    def is_protected(self, user):
        return user.admin or user.bot

    def create_user(self, user):
        if not self._call('create_user', user.username):
            return None
        self.next_id += 1
        return LiveUser(str(self.next_id), user.username, user.email)

    def activate_user(self, user):
        return self._call('activate_user', user.username)

    def deactivate_user(self, user):
        return self._call('deactivate_user', user.username)

    def create_unit(self, name):
        if not self._call('create_unit', name):
            return None
        self.next_id += 1
        return LiveOrganizationUnit(str(self.next_id), name)

    def add_member(self, unit, user, permission):
        return self._call('add_member', unit.name, user.username, permission)

    def remove_member(self, unit, user):
        return self._call('remove_member', unit.name, user.username)

    def update_member_permission(self, unit, user, permission):
        return self._call('update_member_permission', unit.name, user.username, permission)

    def list_sub_resources(self, unit):
        return self.sub_resources.get(unit.name, [])

    def list_sub_resource_members(self, resource):
        return list(self.sub_resource_members.get(resource.id, []))

    def remove_sub_resource_member(self, resource, user):
        if not self._call('remove_sub_resource_member', resource.name, user.username):
            return False
        self.sub_resource_members[resource.id].remove(user)
        return True

    def writes(self, name):
        return [call[1:] for call in self.calls if call[0] == name]


def desired_user(username, email=None, external_uid=None, directory_user=None):
    return DesiredUser(username, email=email or f"{username}@example.com",
                       external_uid=external_uid, directory_user=directory_user)


def desired_unit(name, **members):
    unit = DesiredOrganizationUnit(name)
    for username, permission in members.items():
        unit.add_member(username, permission)
    return unit


class TestUserReconciler(unittest.TestCase):
    """Test cases for UserReconciler."""

    def setUp(self):
        self.app = FakeApplication()
        self.events = InMemoryAuditSink()

    def reconciler(self, **kwargs):
        return UserReconciler('gitlab', self.app, ['root', 'ghost'], self.events, **kwargs)

    def test_creates_missing_users(self):
        directory_user = DirectoryUser('kc-1', 'alice')
        result = self.reconciler().reconcile([], {'alice': desired_user('alice', directory_user=directory_user)})

        self.assertIn('alice', result)
        self.assertEqual(self.app.writes('create_user'), [('alice',)])
        created = self.events.of_type(EventType.USER_CREATED)
        self.assertEqual(len(created), 1)
        self.assertEqual(created[0].data['username'], 'alice')
        self.assertEqual(created[0].data['idpUserId'], 'kc-1')

    def test_unblocks_desired_blocked_users(self):
        bob = LiveUser('2', 'bob', active=False)

        result = self.reconciler().reconcile([bob], {'bob': desired_user('bob')})

        self.assertTrue(bob.active)
        self.assertIs(result['bob'], bob)
        self.assertEqual(len(self.events.of_type(EventType.USER_UNBLOCKED)), 1)

    def test_blocks_users_not_desired(self):
        carol = LiveUser('3', 'carol')

        result = self.reconciler().reconcile([carol], {})

        self.assertFalse(carol.active)
        self.assertIn('carol', result)
        self.assertEqual(self.app.writes('deactivate_user'), [('carol',)])
        self.assertEqual(len(self.events.of_type(EventType.USER_BLOCKED)), 1)

    def test_already_blocked_users_are_not_blocked_again(self):
        carol = LiveUser('3', 'carol', active=False)
        self.reconciler().reconcile([carol], {})
        self.assertEqual(self.app.calls, [])
        self.assertEqual(len(self.events), 0)

    def test_externally_disabled_users_are_left_alone(self):
        erin = LiveUser('5', 'erin', active=False, blocked=False)
        frank = LiveUser('6', 'frank', active=False, blocked=False)

        result = self.reconciler().reconcile([erin, frank], {'erin': desired_user('erin')})

        self.assertEqual(self.app.calls, [])
        self.assertEqual(len(self.events), 0)
        self.assertIs(result['erin'], erin)
        self.assertIs(result['frank'], frank)

    def test_protected_and_excluded_users_are_never_blocked(self):
        users = [
            LiveUser('1', 'root'),
            LiveUser('2', 'admin', admin=True),
            LiveUser('3', 'helper_bot', bot=True),
        ]

        self.reconciler().reconcile(users, {})

        self.assertEqual(self.app.writes('deactivate_user'), [])
        self.assertTrue(all(user.active for user in users))

    def test_provider_requires_external_uid(self):
        with self.assertLogs('idm_sync.reconcile', level='WARNING'):
            result = self.reconciler(provider_name='keycloak').reconcile(
                [], {'dave': desired_user('dave')})

        self.assertNotIn('dave', result)
        self.assertEqual(self.app.writes('create_user'), [])

    def test_user_without_email_is_not_created(self):
        user = DesiredUser('erin')
        with self.assertLogs('idm_sync.reconcile', level='WARNING'):
            result = self.reconciler().reconcile([], {'erin': user})
        self.assertEqual(result, {})

    def test_failed_creation_is_counted(self):
        self.app.failing.add('create_user')
        reconciler = self.reconciler()

        result = reconciler.reconcile([], {'alice': desired_user('alice')})

        self.assertEqual(result, {})
        self.assertEqual(reconciler.failures, 1)
        self.assertEqual(len(self.events), 0)

    def test_user_id_written_to_directory(self):
        directory_user = DirectoryUser('kc-1', 'alice')
        live = LiveUser('42', 'alice')

        self.reconciler(user_id_attribute='GITLAB_USER_ID').reconcile(
            [live], {'alice': desired_user('alice', directory_user=directory_user)})

        self.assertEqual(directory_user.get_attribute('GITLAB_USER_ID'), '42')
        self.assertTrue(directory_user.attributes_modified)

    def test_unchanged_user_id_does_not_mark_directory_user(self):
        directory_user = DirectoryUser('kc-1', 'alice', attributes={'GITLAB_USER_ID': ['42']})

        self.reconciler(user_id_attribute='GITLAB_USER_ID').reconcile(
            [LiveUser('42', 'alice')], {'alice': desired_user('alice', directory_user=directory_user)})

        self.assertFalse(directory_user.attributes_modified)


class TestMembershipReconciler(unittest.TestCase):
    """Test cases for MembershipReconciler."""

    def setUp(self):
        self.app = FakeApplication()
        self.events = InMemoryAuditSink()
        self.alice = LiveUser('1', 'alice')
        self.bob = LiveUser('2', 'bob')
        self.users = {'alice': self.alice, 'bob': self.bob}

    def reconciler(self, permission_change=REPLACE, clean_sub_resources=False, join_permission=None):
        return MembershipReconciler('gitlab', self.app, ['root', 'ghost'], self.events, 'group',
                                    permission_change=permission_change,
                                    clean_sub_resources=clean_sub_resources,
                                    join_permission=join_permission)

    def test_adds_missing_members(self):
        unit = LiveOrganizationUnit('10', 'acme')

        ok = self.reconciler().reconcile(
            [unit], {'acme': desired_unit('acme', alice=GitLabPermission.DEVELOPER)}, self.users)

        self.assertTrue(ok)
        self.assertEqual(unit.permission_of('alice'), GitLabPermission.DEVELOPER)
        added = self.events.of_type(EventType.USER_ADDED)
        self.assertEqual(len(added), 1)
        self.assertEqual(added[0].data['compositeName'], 'acme')
        self.assertEqual(added[0].data['role'], 'DEVELOPER')

    def test_removes_members_not_desired(self):
        unit = LiveOrganizationUnit('10', 'acme')
        unit.add_member(self.alice, GitLabPermission.DEVELOPER)
        unit.add_member(self.bob, GitLabPermission.DEVELOPER)

        self.reconciler().reconcile(
            [unit], {'acme': desired_unit('acme', alice=GitLabPermission.DEVELOPER)}, self.users)

        self.assertFalse(unit.is_member('bob'))
        self.assertEqual(self.app.writes('remove_member'), [('acme', 'bob')])
        self.assertEqual(len(self.events.of_type(EventType.USER_REMOVED)), 1)

    def test_removes_blocked_members(self):
        self.bob.block()
        unit = LiveOrganizationUnit('10', 'acme')
        unit.add_member(self.bob, GitLabPermission.DEVELOPER)

        self.reconciler().reconcile(
            [unit], {'acme': desired_unit('acme', bob=GitLabPermission.DEVELOPER)}, self.users)

        self.assertFalse(unit.is_member('bob'))

    def test_permission_change_replaces_member(self):
        unit = LiveOrganizationUnit('10', 'acme')
        unit.add_member(self.alice, GitLabPermission.DEVELOPER)

        self.reconciler(REPLACE).reconcile(
            [unit], {'acme': desired_unit('acme', alice=GitLabPermission.MAINTAINER)}, self.users)

        self.assertEqual(unit.permission_of('alice'), GitLabPermission.MAINTAINER)
        self.assertEqual([call[0] for call in self.app.calls], ['remove_member', 'add_member'])
        self.assertEqual([event.type for event in self.events.events],
                         [EventType.USER_REMOVED, EventType.USER_ADDED])

    def test_permission_change_updates_role(self):
        unit = LiveOrganizationUnit('10', 'dev')
        unit.add_member(self.alice, TeamRole.USER)

        self.reconciler(UPDATE).reconcile(
            [unit], {'dev': desired_unit('dev', alice=TeamRole.ADMIN)}, self.users)

        self.assertEqual(unit.permission_of('alice'), TeamRole.ADMIN)
        self.assertEqual(self.app.writes('update_member_permission'), [('dev', 'alice', TeamRole.ADMIN)])
        updated = self.events.of_type(EventType.USER_UPDATED)
        self.assertEqual(len(updated), 1)
        self.assertEqual(updated[0].data['role'], 'ADMIN')

    def test_new_member_joins_then_gets_role(self):
        unit = LiveOrganizationUnit('10', 'dev')

        ok = self.reconciler(UPDATE, join_permission=TeamRole.USER).reconcile(
            [unit], {'dev': desired_unit('dev', alice=TeamRole.ADMIN, bob=TeamRole.USER)}, self.users)

        self.assertTrue(ok)
        self.assertEqual(self.app.writes('add_member'),
                         [('dev', 'alice', TeamRole.USER), ('dev', 'bob', TeamRole.USER)])
        self.assertEqual(self.app.writes('update_member_permission'), [('dev', 'alice', TeamRole.ADMIN)])
        self.assertEqual(unit.permission_of('alice'), TeamRole.ADMIN)
        self.assertEqual([event.type for event in self.events.events],
                         [EventType.USER_ADDED, EventType.USER_UPDATED, EventType.USER_ADDED])

    def test_failed_role_update_keeps_added_member(self):
        self.app.failing.add('update_member_permission')
        unit = LiveOrganizationUnit('10', 'dev')
        reconciler = self.reconciler(UPDATE, join_permission=TeamRole.USER)

        with self.assertLogs('idm_sync.reconcile', level='ERROR'):
            ok = reconciler.reconcile([unit], {'dev': desired_unit('dev', alice=TeamRole.ADMIN)}, self.users)

        self.assertFalse(ok)
        self.assertEqual(reconciler.failures, 1)
        self.assertEqual(unit.permission_of('alice'), TeamRole.USER)
        self.assertEqual([event.type for event in self.events.events], [EventType.USER_ADDED])

    def test_join_permission_ignored_when_replacing(self):
        reconciler = self.reconciler(REPLACE, join_permission=GitLabPermission.GUEST)
        self.assertIsNone(reconciler.join_permission)

    def test_externally_disabled_members_are_kept(self):
        self.bob.active = False
        unit = LiveOrganizationUnit('10', 'acme')
        unit.add_member(self.bob, GitLabPermission.DEVELOPER)

        self.reconciler().reconcile(
            [unit], {'acme': desired_unit('acme', bob=GitLabPermission.DEVELOPER)}, self.users)

        self.assertTrue(unit.is_member('bob'))
        self.assertEqual(self.app.calls, [])

    def test_creates_missing_units_with_members(self):
        ok = self.reconciler().reconcile(
            [], {'tools': desired_unit('tools', alice=GitLabPermission.REPORTER, zoe=GitLabPermission.REPORTER)},
            self.users)

        self.assertTrue(ok)
        self.assertEqual(self.app.writes('create_unit'), [('tools',)])
        self.assertEqual(self.app.writes('add_member'), [('tools', 'alice', GitLabPermission.REPORTER)])
        self.assertEqual([event.type for event in self.events.events],
                         [EventType.COMPOSITE_CREATED, EventType.USER_ADDED])

    def test_empties_units_without_directory_groups(self):
        unit = LiveOrganizationUnit('10', 'legacy')
        unit.add_member(self.alice, GitLabPermission.OWNER)

        self.reconciler().reconcile([unit], {}, self.users)

        self.assertEqual(unit.members, {})
        self.assertEqual(self.app.writes('remove_member'), [('legacy', 'alice')])

    def test_protected_members_are_kept(self):
        admin = LiveUser('5', 'admin', admin=True)
        root = LiveUser('6', 'root')
        unit = LiveOrganizationUnit('10', 'legacy')
        unit.add_member(admin, GitLabPermission.OWNER)
        unit.add_member(root, GitLabPermission.OWNER)

        self.reconciler().reconcile([unit], {'legacy': desired_unit('legacy')}, self.users)
        self.reconciler().reconcile([unit], {}, self.users)

        self.assertEqual(self.app.writes('remove_member'), [])
        self.assertTrue(unit.is_member('admin'))
        self.assertTrue(unit.is_member('root'))

    def test_unsynced_users_are_not_added(self):
        unit = LiveOrganizationUnit('10', 'acme')

        self.reconciler().reconcile(
            [unit], {'acme': desired_unit('acme', zoe=GitLabPermission.DEVELOPER)}, self.users)

        self.assertEqual(self.app.calls, [])

    def test_failed_write_is_reported_and_pass_continues(self):
        self.app.failing.add('add_member')
        acme = LiveOrganizationUnit('10', 'acme')
        legacy = LiveOrganizationUnit('11', 'legacy')
        legacy.add_member(self.bob, GitLabPermission.GUEST)

        reconciler = self.reconciler()
        ok = reconciler.reconcile(
            [acme, legacy], {'acme': desired_unit('acme', alice=GitLabPermission.DEVELOPER)}, self.users)

        self.assertFalse(ok)
        self.assertEqual(reconciler.failures, 1)
        self.assertFalse(acme.is_member('alice'))
        self.assertFalse(legacy.is_member('bob'))
        self.assertEqual(len(self.events.of_type(EventType.USER_ADDED)), 0)

    def test_second_pass_is_a_no_op(self):
        acme = LiveOrganizationUnit('10', 'acme')
        acme.add_member(self.bob, GitLabPermission.MAINTAINER)
        desired = {
            'acme': desired_unit('acme', alice=GitLabPermission.DEVELOPER, bob=GitLabPermission.GUEST),
            'tools': desired_unit('tools', bob=GitLabPermission.REPORTER),
        }
        live = [acme]

        self.reconciler().reconcile(live, desired, self.users)
        tools = LiveOrganizationUnit('200', 'tools')
        tools.add_member(self.bob, GitLabPermission.REPORTER)
        self.app.calls = []
        self.events.clear()

        ok = self.reconciler().reconcile(live + [tools], desired, self.users)

        self.assertTrue(ok)
        self.assertEqual(self.app.calls, [])
        self.assertEqual(len(self.events), 0)

    def test_sub_resource_members_outside_unit_are_removed(self):
        unit = LiveOrganizationUnit('10', 'acme')
        unit.add_member(self.alice, GitLabPermission.DEVELOPER)
        bot = LiveUser('9', 'project_1_bot', bot=True)
        project = SubResource('p1', 'acme/api', 'project')
        self.app.sub_resources['acme'] = [project]
        self.app.sub_resource_members['p1'] = [self.alice, self.bob, bot]

        self.reconciler(clean_sub_resources=True).reconcile(
            [unit], {'acme': desired_unit('acme', alice=GitLabPermission.DEVELOPER)}, self.users)

        self.assertEqual(self.app.writes('remove_sub_resource_member'), [('acme/api', 'bob')])
        removed = self.events.of_type(EventType.USER_REMOVED)
        self.assertEqual(removed[0].data['compositeType'], 'project')

    def test_unknown_strategy(self):
        with self.assertRaises(ValueError):
            self.reconciler(permission_change='merge')


if __name__ == '__main__':
    unittest.main()
