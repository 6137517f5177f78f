#!/usr/bin/env python3
"""
Unit tests for the sync engine.

LDAP and GitHub are mocked; the invitation store runs in memory.
"""

import unittest
from unittest.mock import Mock
import sys
import os
import threading

# Add parent directory to path to import ldap_org_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_org_sync.config import ConfigurationError
from ldap_org_sync.engine import (
    SyncCancelledError,
    SyncEngine,
    SyncError,
    SyncInProgressError,
)
from ldap_org_sync.ldap_client import LDAPQueryError
from ldap_org_sync.models import (
    ActionType,
    InvitationStatus,
    OrgRole,
    SourceMember,
    TargetMember,
    existing_key,
)
from ldap_org_sync.store import InvitationStore
from ldap_org_sync.targets.base import AlreadyMemberError, TargetAPIError

ORG = 'example-org'
MEMBERS_DN = 'CN=GitHub Members,OU=Groups,DC=example,DC=com'
OWNERS_DN = 'CN=GitHub Owners,OU=Groups,DC=example,DC=com'


def make_config(dry_run=False, remove_extra_members=False, ignore_suspended=True):
    return {
        'ldap': {'members_group': MEMBERS_DN, 'owners_group': OWNERS_DN},
        'github': {'organization': ORG},
        'sync': {
            'dry_run': dry_run,
            'remove_extra_members': remove_extra_members,
            'ignore_suspended': ignore_suspended,
        },
    }


class TestSyncEngine(unittest.TestCase):

    def setUp(self):
        self.ldap = Mock()
        self.groups = {
            MEMBERS_DN: [SourceMember('a@x.com')],
            OWNERS_DN: [SourceMember('b@x.com', source_role='owner')],
        }
        self.ldap.list_group_members.side_effect = lambda dn: list(self.groups[dn])
        self.ldap.get_suspension_status.return_value = {}

        self.github = Mock()
        self.github.list_members.return_value = [
            TargetMember(account_handle='alice', email='a@x.com', role=OrgRole.MEMBER),
        ]
        self.github.list_pending_invitations.return_value = []
        self.github.list_verified_domain_emails.return_value = {}
        self.github.list_add_member_audit_events.return_value = []
        self.github.list_failed_invitations.return_value = []
        self.github.create_invitation.return_value = TargetMember(
            email='b@x.com', is_pending=True, invitation_id=501
        )

        self.store = InvitationStore(':memory:')

    def tearDown(self):
        self.store.close()

    def test_missing_configuration_rejected(self):
        config = make_config()
        del config['ldap']['owners_group']
        with self.assertRaises(ConfigurationError):
            SyncEngine(self.ldap, self.github, config)

    def test_live_run_invites_missing_owner_and_tracks_it(self):
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        result = engine.sync()

        self.github.create_invitation.assert_called_once_with(ORG, 'b@x.com', OrgRole.OWNER)
        self.assertEqual(len(result.actions), 1)
        self.assertEqual(result.actions[0].type, ActionType.INVITE)
        self.assertTrue(result.actions[0].executed)
        self.assertEqual(result.invited_users, ['b@x.com'])
        self.assertEqual(result.summary.invited, 1)
        self.assertEqual(result.summary.actions_executed, 1)
        self.assertEqual(result.summary.total_source_members, 2)
        self.assertTrue(result.is_success)
        self.assertFalse(engine.running)

        self.assertEqual(result.reconciliation.new_saved, 1)
        record = self.store.get_invitation(ORG, 501)
        self.assertEqual(record.status, InvitationStatus.PENDING)
        self.assertEqual(record.role, OrgRole.OWNER)

    def test_dry_run_calls_no_mutating_endpoints(self):
        engine = SyncEngine(self.ldap, self.github, make_config(dry_run=True), self.store)
        result = engine.sync()

        self.github.create_invitation.assert_not_called()
        self.github.remove_member.assert_not_called()
        self.github.update_member_role.assert_not_called()
        self.github.cancel_invitation.assert_not_called()
        self.assertTrue(result.dry_run)
        self.assertEqual(len(result.actions), 1)
        self.assertFalse(result.actions[0].executed)
        self.assertIsNone(result.reconciliation)
        self.assertEqual(result.invited_users, [])
        self.assertEqual(self.store.count(), 0)

    def test_without_store_reconciliation_is_skipped(self):
        engine = SyncEngine(self.ldap, self.github, make_config())
        result = engine.sync()
        self.assertIsNone(result.reconciliation)
        self.github.list_add_member_audit_events.assert_not_called()

    def test_already_present_invite_is_recorded(self):
        self.github.create_invitation.side_effect = AlreadyMemberError('b@x.com')
        self.github.search_user_by_email.return_value = 'bob'

        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        result = engine.sync()

        action = result.actions[0]
        self.assertEqual(action.type, ActionType.UPDATE_ROLE)
        self.assertTrue(action.already_present)
        self.assertEqual(result.already_present_users, ['b@x.com'])
        self.assertEqual(result.summary.already_present, 1)
        self.assertEqual(result.summary.role_updated, 1)
        self.assertEqual(result.reconciliation.already_present_resolved, 1)
        self.assertEqual(self.store.get(ORG, existing_key('bob')).role, OrgRole.OWNER)

    def test_failed_action_marks_run_unsuccessful(self):
        self.github.create_invitation.side_effect = TargetAPIError('validation failed', status_code=422)
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        result = engine.sync()

        self.assertEqual(result.summary.actions_failed, 1)
        self.assertFalse(result.is_success)

    def test_suspended_accounts_are_not_invited(self):
        self.ldap.get_suspension_status.return_value = {'b@x.com': True}
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        result = engine.sync()

        self.assertEqual(result.actions, [])
        self.github.create_invitation.assert_not_called()

    def test_suspension_lookup_failure_is_not_fatal(self):
        self.ldap.get_suspension_status.side_effect = LDAPQueryError('timeout')
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        result = engine.sync()
        self.assertEqual(result.invited_users, ['b@x.com'])

    def test_suspension_lookup_can_be_disabled(self):
        engine = SyncEngine(self.ldap, self.github, make_config(ignore_suspended=False), self.store)
        engine.sync()
        self.ldap.get_suspension_status.assert_not_called()

    def test_verified_email_failure_is_not_fatal(self):
        self.github.list_verified_domain_emails.side_effect = TargetAPIError('graphql down')
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        result = engine.sync()
        self.assertEqual(result.invited_users, ['b@x.com'])

    def test_ldap_listing_failure_aborts(self):
        self.ldap.list_group_members.side_effect = LDAPQueryError('search failed')
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        with self.assertRaises(SyncError):
            engine.sync()
        self.assertFalse(engine.running)

    def test_github_listing_failure_aborts(self):
        self.github.list_members.side_effect = TargetAPIError('bad gateway', status_code=502)
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        with self.assertRaises(SyncError):
            engine.sync()
        self.github.create_invitation.assert_not_called()

    def test_orphaned_members_reported_not_acted_on(self):
        self.github.list_members.return_value = [
            TargetMember(account_handle='alice', email='a@x.com'),
            TargetMember(account_handle='bob', email='b@x.com', role=OrgRole.OWNER),
            TargetMember(account_handle='carol'),
        ]
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        result = engine.sync()

        self.assertEqual(result.actions, [])
        self.assertEqual(result.orphaned_members, ['carol'])
        self.assertEqual(result.summary.orphaned, 1)

    def test_verified_mapping_completed_after_run(self):
        self.github.list_members.return_value = [
            TargetMember(account_handle='alice', email='a@x.com'),
            TargetMember(account_handle='bobby', role=OrgRole.OWNER),
        ]
        self.github.list_verified_domain_emails.return_value = {'b@x.com': 'bobby'}

        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        result = engine.sync()

        self.assertEqual(result.actions, [])
        self.assertEqual(result.reconciliation.verified_emails_mapped, 1)
        self.assertEqual(self.store.resolved_mappings(ORG), {'b@x.com': 'bobby'})

    def test_concurrent_sync_rejected(self):
        entered = threading.Event()
        release = threading.Event()

        def slow_list(dn):
            entered.set()
            release.wait(5)
            return list(self.groups[dn])

        self.ldap.list_group_members.side_effect = slow_list
        engine = SyncEngine(self.ldap, self.github, make_config(dry_run=True))

        worker = threading.Thread(target=engine.sync)
        worker.start()
        try:
            self.assertTrue(entered.wait(5))
            self.assertTrue(engine.running)
            with self.assertRaises(SyncInProgressError):
                engine.sync()
        finally:
            release.set()
            worker.join(5)
        self.assertFalse(engine.running)

    def test_cancelled_run_raises(self):
        cancel_event = threading.Event()
        cancel_event.set()
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        with self.assertRaises(SyncCancelledError):
            engine.sync(cancel_event=cancel_event)
        self.ldap.list_group_members.assert_not_called()
        self.assertFalse(engine.running)

    def test_result_serializes(self):
        engine = SyncEngine(self.ldap, self.github, make_config(), self.store)
        data = engine.sync().to_dict()
        self.assertEqual(data['actions'][0]['type'], 'invite')
        self.assertEqual(data['actions'][0]['desired_role'], 'admin')
        self.assertEqual(data['reconciliation']['new_saved'], 1)
        self.assertGreaterEqual(data['duration_ms'], 0)


if __name__ == '__main__':
    unittest.main()
