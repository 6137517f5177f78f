#!/usr/bin/env python3
"""
Unit tests for the LDAP client.

ldap3's Server and Connection are replaced with mocks; entries are small
fakes that behave like ldap3 entries for ``in`` checks and item access.
"""

import unittest
from unittest.mock import Mock, patch
import sys
import os
from datetime import datetime, timezone

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3.core.exceptions import LDAPSocketOpenError

from ldap_org_sync.ldap_client import (
    LDAPClient,
    LDAPConnectionError,
    LDAPQueryError,
    PAGED_RESULTS_OID,
)

MEMBERS_DN = 'CN=GitHub Members,OU=Groups,DC=example,DC=com'


class FakeAttribute:

    def __init__(self, value):
        self.values = value if isinstance(value, list) else [value]
        self.value = value


class FakeEntry:
    """Minimal stand-in for ldap3.abstract.entry.Entry."""

    def __init__(self, dn, **attributes):
        self.entry_dn = dn
        self._attributes = {name: FakeAttribute(value) for name, value in attributes.items()}

    def __contains__(self, name):
        return name in self._attributes

    def __getitem__(self, name):
        return self._attributes[name]

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return self._attributes[name]
        except KeyError:
            raise AttributeError(name)


def person(uid, mail=None, uac=512, computer=False, **extra):
    object_classes = ['top', 'person', 'user'] + (['computer'] if computer else [])
    attributes = {'objectClass': object_classes, 'userAccountControl': uac}
    if mail:
        attributes['mail'] = mail
    attributes.update(extra)
    return FakeEntry(f'CN={uid},OU=Users,DC=example,DC=com', **attributes)


class LDAPClientTestCase(unittest.TestCase):

    def setUp(self):
        self.config = {
            'server_url': 'ldaps://ldap.example.com:636',
            'bind_dn': 'CN=service,OU=Service,DC=example,DC=com',
            'bind_password': 'password123',
            'user_base_dn': 'OU=Users,DC=example,DC=com',
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0},
        }

    def connected_client(self, **overrides):
        config = dict(self.config)
        config.update(overrides)
        client = LDAPClient(config)
        client.connection = Mock()
        client.connection.result = {'result': 0, 'controls': {}}
        client._connected = True
        return client


class TestInitialization(LDAPClientTestCase):

    def test_ssl_detected_from_url(self):
        client = LDAPClient(self.config)
        self.assertTrue(client.use_ssl)
        self.assertFalse(client.start_tls)
        self.assertEqual(client.max_retries, 2)
        self.assertEqual(client.email_attribute, 'mail')

    def test_plain_ldap_with_custom_email_attribute(self):
        config = dict(self.config, server_url='ldap://ldap.example.com', email_attribute='userPrincipalName')
        client = LDAPClient(config)
        self.assertFalse(client.use_ssl)
        self.assertIn('userPrincipalName', client.attributes)


class TestConnect(LDAPClientTestCase):

    @patch('ldap_org_sync.retry.time.sleep')
    @patch('ldap_org_sync.ldap_client.Connection')
    @patch('ldap_org_sync.ldap_client.Server')
    def test_connect_success(self, mock_server, mock_connection, mock_sleep):
        connection = mock_connection.return_value
        connection.open.return_value = True
        connection.bind.return_value = True

        client = LDAPClient(self.config)
        self.assertTrue(client.connect())
        connection.bind.assert_called_once()
        mock_sleep.assert_not_called()

        client.disconnect()
        connection.unbind.assert_called_once()
        self.assertIsNone(client.connection)

    @patch('ldap_org_sync.retry.time.sleep')
    @patch('ldap_org_sync.ldap_client.Connection')
    @patch('ldap_org_sync.ldap_client.Server')
    def test_connect_retries_then_fails(self, mock_server, mock_connection, mock_sleep):
        connection = mock_connection.return_value
        connection.open.side_effect = LDAPSocketOpenError('unreachable')

        client = LDAPClient(self.config)
        with self.assertRaises(LDAPConnectionError):
            client.connect()
        self.assertEqual(connection.open.call_count, 2)
        self.assertEqual(mock_sleep.call_count, 1)

    @patch('ldap_org_sync.retry.time.sleep')
    @patch('ldap_org_sync.ldap_client.Connection')
    @patch('ldap_org_sync.ldap_client.Server')
    def test_bind_failure(self, mock_server, mock_connection, mock_sleep):
        connection = mock_connection.return_value
        connection.open.return_value = True
        connection.bind.return_value = False

        client = LDAPClient(self.config)
        with self.assertRaises(LDAPConnectionError):
            client.connect()

    def test_query_requires_connection(self):
        client = LDAPClient(self.config)
        with self.assertRaises(LDAPQueryError):
            client.list_group_members(MEMBERS_DN)
        with self.assertRaises(LDAPQueryError):
            client.get_suspension_status(['a@x.com'])


class TestGroupMembers(LDAPClientTestCase):

    def test_memberof_search_maps_entries(self):
        client = self.connected_client()
        client.connection.search.return_value = True
        client.connection.entries = [
            person('alice', 'alice@example.com'),
            person('disabled', 'disabled@example.com', uac=514),
            person('host', 'host@example.com', computer=True),
            person('nomail'),
            person('alice-dup', 'ALICE@example.com'),
        ]

        members = client.list_group_members(MEMBERS_DN)

        self.assertEqual([m.email for m in members],
                         ['alice@example.com', 'disabled@example.com', 'host@example.com'])
        self.assertTrue(members[0].is_active)
        self.assertEqual(members[1].account_status, 'disabled')
        self.assertEqual(members[2].account_type, 'computer')

        kwargs = client.connection.search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'OU=Users,DC=example,DC=com')
        self.assertIn('memberOf=CN=GitHub Members', kwargs['search_filter'])
        self.assertEqual(kwargs['paged_size'], 1000)

    def test_multi_valued_mail_uses_first_address(self):
        client = self.connected_client()
        client.connection.search.return_value = True
        client.connection.entries = [
            person('alice', ['alice@example.com', 'a.smith@example.com']),
            person('blank', ['', 'blank@example.com']),
        ]

        members = client.list_group_members(MEMBERS_DN)

        self.assertEqual([m.email for m in members], ['alice@example.com', 'blank@example.com'])

    def test_paged_search_follows_cookie(self):
        client = self.connected_client()
        pages = [
            ([person('a', 'a@example.com')], b'cookie-1'),
            ([person('b', 'b@example.com')], None),
        ]

        def search(**kwargs):
            entries, cookie = pages.pop(0)
            client.connection.entries = entries
            controls = {PAGED_RESULTS_OID: {'value': {'cookie': cookie}}} if cookie else {}
            client.connection.result = {'result': 0, 'controls': controls}
            return True

        client.connection.search.side_effect = search
        members = client.list_group_members(MEMBERS_DN)

        self.assertEqual([m.email for m in members], ['a@example.com', 'b@example.com'])
        second_call = client.connection.search.call_args_list[1].kwargs
        self.assertEqual(second_call['paged_cookie'], b'cookie-1')

    def test_group_member_attribute_fallback(self):
        client = self.connected_client(use_memberof=False)
        group = FakeEntry(MEMBERS_DN, member=['CN=alice,OU=Users,DC=example,DC=com'])
        alice = person('alice', 'alice@example.com')
        results = [[group], [alice]]

        def search(**kwargs):
            client.connection.entries = results.pop(0)
            return True

        client.connection.search.side_effect = search
        members = client.list_group_members(MEMBERS_DN)
        self.assertEqual([m.email for m in members], ['alice@example.com'])

    def test_group_not_found(self):
        client = self.connected_client(use_memberof=False)
        client.connection.search.return_value = False
        client.connection.entries = []
        with self.assertRaises(LDAPQueryError):
            client.list_group_members(MEMBERS_DN)


class TestSuspension(LDAPClientTestCase):

    def run_lookup(self, entries_by_email):
        client = self.connected_client()

        def search(**kwargs):
            for email, entry in entries_by_email.items():
                if email in kwargs['search_filter']:
                    client.connection.entries = [entry] if entry else []
                    return entry is not None
            client.connection.entries = []
            return False

        client.connection.search.side_effect = search
        return client.get_suspension_status(list(entries_by_email))

    def test_lockout_attributes(self):
        status = self.run_lookup({
            'ad-locked@example.com': person('a', 'ad-locked@example.com', lockoutTime=133000000000000000),
            'ad-clear@example.com': person('b', 'ad-clear@example.com', lockoutTime=0),
            'ad-epoch@example.com': person('c', 'ad-epoch@example.com',
                                           lockoutTime=datetime(1601, 1, 1, tzinfo=timezone.utc)),
            'ol-locked@example.com': person('d', 'ol-locked@example.com', pwdAccountLockedTime='20240101000000Z'),
            'Missing@example.com': None,
        })
        self.assertEqual(status, {
            'ad-locked@example.com': True,
            'ad-clear@example.com': False,
            'ad-epoch@example.com': False,
            'ol-locked@example.com': True,
        })


class TestValidation(LDAPClientTestCase):

    def test_validate_group_dn(self):
        client = self.connected_client()
        client.connection.search.return_value = True
        client.connection.entries = [FakeEntry(MEMBERS_DN, objectClass=['group'])]
        self.assertTrue(client.validate_group_dn(MEMBERS_DN))

        client.connection.search.return_value = False
        client.connection.entries = []
        self.assertFalse(client.validate_group_dn(MEMBERS_DN))

    def test_validate_requires_connection(self):
        self.assertFalse(LDAPClient(self.config).validate_group_dn(MEMBERS_DN))

    def test_domain_base_from_bind_dn(self):
        client = LDAPClient(dict(self.config, user_base_dn=''))
        self.assertEqual(client._get_domain_base(), 'DC=example,DC=com')


if __name__ == '__main__':
    unittest.main()
