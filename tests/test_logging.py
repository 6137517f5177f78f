#!/usr/bin/env python3
"""
Unit tests for logging setup, sensitive data filtering and audit logging.
"""

import os
import sys
import time
import shutil
import logging
import tempfile
import unittest
from datetime import datetime, timezone

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_org_sync.logging_setup import LoggingManager, MembershipAuditLogger, SensitiveDataFilter
from ldap_org_sync.models import ActionType, OrgRole, SyncAction, SyncResult


def make_record(msg, args=None):
    return logging.LogRecord('test', logging.INFO, __file__, 1, msg, args, None)


class TestSensitiveDataFilter(unittest.TestCase):

    def setUp(self):
        self.filter = SensitiveDataFilter()

    def test_patterns(self):
        cases = [
            ('password=secret123', 'password=****'),
            ('token=abc123def456', 'token=****'),
            ('{"bind_password": "topsecret"}', '{"bind_password": "****"}'),
            ('{"smtp_password": "test123"}', '{"smtp_password": "****"}'),
            ('Authorization: Bearer abc123token', 'Authorization: Bearer ****'),
            ('using ghp_AbCdEf0123456789 for org', 'using ghp_**** for org'),
            ('github_pat_11ABC_xyz in env', 'github_pat_**** in env'),
            ('Normal message without secrets', 'Normal message without secrets'),
        ]
        for message, expected in cases:
            with self.subTest(message=message):
                record = make_record(message)
                self.assertTrue(self.filter.filter(record))
                self.assertEqual(record.msg, expected)

    def test_args_are_merged_before_scrubbing(self):
        record = make_record('connecting with password=%s', ('hunter2',))
        self.filter.filter(record)
        self.assertEqual(record.getMessage(), 'connecting with password=****')
        self.assertIsNone(record.args)


class TestLoggingManager(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level

    def tearDown(self):
        for handler in list(self.root.handlers):
            self.root.removeHandler(handler)
            handler.close()
        for handler in self.saved_handlers:
            self.root.addHandler(handler)
        self.root.setLevel(self.saved_level)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_setup_creates_log_file_and_masks_secrets(self):
        manager = LoggingManager()
        manager.setup_logging({'level': 'DEBUG', 'log_dir': self.temp_dir, 'console_output': False})

        logging.getLogger('ldap_org_sync.test').info('token=ghp_shouldnotappear')
        for handler in self.root.handlers:
            handler.flush()

        log_file = os.path.join(self.temp_dir, 'app.log')
        self.assertTrue(os.path.exists(log_file))
        with open(log_file) as f:
            content = f.read()
        self.assertIn('token=****', content)
        self.assertNotIn('shouldnotappear', content)
        self.assertEqual(self.root.level, logging.DEBUG)

    def test_setup_runs_once_unless_forced(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': False})
        handlers = list(self.root.handlers)

        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': True})
        self.assertEqual(self.root.handlers, handlers)

        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': True}, force=True)
        self.assertEqual(len(self.root.handlers), 2)

    def test_cleanup_old_logs(self):
        manager = LoggingManager()
        manager.log_dir = self.temp_dir
        manager.retention_days = 7

        old_file = os.path.join(self.temp_dir, 'app.log.2020-01-01')
        recent_file = os.path.join(self.temp_dir, 'app.log.2099-01-01')
        current = os.path.join(self.temp_dir, 'app.log')
        for path in (old_file, recent_file, current):
            with open(path, 'w') as f:
                f.write('x')
        old_time = time.time() - 30 * 86400
        os.utime(old_file, (old_time, old_time))
        os.utime(current, (old_time, old_time))

        removed = manager.cleanup_old_logs()

        self.assertEqual(removed, [old_file])
        self.assertTrue(os.path.exists(recent_file))
        self.assertTrue(os.path.exists(current))


class TestMembershipAuditLogger(unittest.TestCase):

    def test_log_run_writes_one_line_per_action(self):
        now = datetime.now(timezone.utc)
        result = SyncResult(dry_run=False, start_time=now, end_time=now, actions=[
            SyncAction(type=ActionType.INVITE, target_identifier='b@x.com', source_email='b@x.com',
                       desired_role=OrgRole.OWNER, executed=True, invitation_id=5),
            SyncAction(type=ActionType.REMOVE, target_identifier='dave', error='HTTP 403: forbidden'),
            SyncAction(type=ActionType.UPDATE_ROLE, target_identifier='bob', source_email='b2@x.com',
                       desired_role=OrgRole.MEMBER),
        ])

        with self.assertLogs('audit', level='INFO') as logs:
            MembershipAuditLogger().log_run('example-org', result)

        self.assertEqual(len(logs.output), 3)
        self.assertIn('SUCCESS: invite b@x.com org=example-org role=admin', logs.output[0])
        self.assertTrue(logs.output[1].startswith('WARNING:audit:FAILURE: remove dave'))
        self.assertIn('error=HTTP 403: forbidden', logs.output[1])
        self.assertIn('PLANNED: update_role bob', logs.output[2])
        self.assertIn('email=b2@x.com', logs.output[2])


if __name__ == '__main__':
    unittest.main()
