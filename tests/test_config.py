#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers YAML loading, environment variable overrides, validation and
default values.
"""

import os
import sys
import shutil
import tempfile
import yaml
import unittest
from unittest.mock import patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_org_sync.config import ConfigLoader, ConfigurationError, load_config


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'ldap': {
                'server_url': 'ldaps://ldap.example.com:636',
                'bind_dn': 'CN=Service,DC=example,DC=com',
                'bind_password': 'password',
                'user_base_dn': 'OU=Users,DC=example,DC=com',
                'members_group': 'CN=GitHub Members,OU=Groups,DC=example,DC=com',
                'owners_group': 'CN=GitHub Owners,OU=Groups,DC=example,DC=com',
            },
            'github': {
                'organization': 'example-org',
                'token': 'ghp_exampletoken',
            },
            'store': {
                'enabled': True,
                'path': 'invitations.db',
            },
        }
        self.temp_dir = tempfile.mkdtemp()
        self.env_patcher = patch.dict(os.environ, {}, clear=False)
        self.env_patcher.start()
        for name in ('LDAP_BIND_PASSWORD', 'GITHUB_ORG', 'GITHUB_TOKEN', 'DRY_RUN', 'IGNORE_SUSPENDED',
                     'REMOVE_EXTRA_MEMBERS', 'STORE_ENABLED', 'STORE_PATH', 'STORE_TTL_DAYS',
                     'SMTP_PASSWORD', 'CONFIG_PATH'):
            os.environ.pop(name, None)

    def tearDown(self):
        """Clean up test fixtures."""
        self.env_patcher.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_config(self, config, name='config.yaml'):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            if isinstance(config, str):
                f.write(config)
            else:
                yaml.dump(config, f)
        return path

    def test_load_valid_config(self):
        """Test loading a valid configuration file."""
        config = ConfigLoader(self.write_config(self.valid_config)).load()

        self.assertEqual(config['github']['organization'], 'example-org')
        self.assertEqual(config['ldap']['members_group'], self.valid_config['ldap']['members_group'])
        self.assertTrue(config['store']['enabled'])

    def test_defaults_applied(self):
        config = load_config(self.write_config(self.valid_config))

        self.assertTrue(config['sync']['dry_run'])
        self.assertTrue(config['sync']['ignore_suspended'])
        self.assertFalse(config['sync']['remove_extra_members'])
        self.assertEqual(config['store']['ttl_days'], 90)
        self.assertEqual(config['github']['base_url'], 'https://api.github.com')
        self.assertEqual(config['ldap']['email_attribute'], 'mail')
        self.assertEqual(config['error_handling']['max_retries'], 3)
        self.assertFalse(config['notifications']['enable_email'])
        self.assertEqual(config['logging']['retention_days'], 7)

    def test_file_not_found(self):
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(os.path.join(self.temp_dir, 'missing.yaml')).load()
        self.assertIn('not found', str(context.exception))

    def test_invalid_yaml(self):
        path = self.write_config("ldap: [unclosed\n")
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(path).load()
        self.assertIn('Invalid YAML', str(context.exception))

    def test_non_mapping_rejected(self):
        path = self.write_config("- just\n- a list\n")
        with self.assertRaises(ConfigurationError):
            ConfigLoader(path).load()

    def test_empty_file_reports_missing_fields(self):
        path = self.write_config("")
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(path).load()
        message = str(context.exception)
        self.assertIn('ldap.server_url', message)
        self.assertIn('github.token', message)

    def test_missing_required_fields_collected(self):
        del self.valid_config['ldap']['owners_group']
        del self.valid_config['github']['organization']
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.write_config(self.valid_config)).load()
        message = str(context.exception)
        self.assertIn('ldap.owners_group', message)
        self.assertIn('github.organization', message)

    def test_same_group_for_members_and_owners_rejected(self):
        self.valid_config['ldap']['owners_group'] = self.valid_config['ldap']['members_group'].upper()
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.write_config(self.valid_config)).load()

    def test_invalid_ttl_rejected(self):
        self.valid_config['store']['ttl_days'] = 0
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.write_config(self.valid_config)).load()

    def test_email_settings_required_when_enabled(self):
        self.valid_config['notifications'] = {'enable_email': True}
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.write_config(self.valid_config)).load()
        self.assertIn('notifications.smtp_server', str(context.exception))

    def test_environment_overrides(self):
        del self.valid_config['github']['token']
        os.environ['GITHUB_TOKEN'] = 'ghp_fromenv'
        os.environ['DRY_RUN'] = 'false'
        os.environ['REMOVE_EXTRA_MEMBERS'] = 'yes'
        os.environ['STORE_TTL_DAYS'] = '30'

        config = ConfigLoader(self.write_config(self.valid_config)).load()

        self.assertEqual(config['github']['token'], 'ghp_fromenv')
        self.assertFalse(config['sync']['dry_run'])
        self.assertTrue(config['sync']['remove_extra_members'])
        self.assertEqual(config['store']['ttl_days'], 30)

    def test_invalid_boolean_override(self):
        os.environ['DRY_RUN'] = 'maybe'
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.write_config(self.valid_config)).load()

    def test_invalid_integer_override(self):
        os.environ['STORE_TTL_DAYS'] = 'ninety'
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.write_config(self.valid_config)).load()

    def test_empty_environment_value_ignored(self):
        os.environ['GITHUB_ORG'] = ''
        config = ConfigLoader(self.write_config(self.valid_config)).load()
        self.assertEqual(config['github']['organization'], 'example-org')

    def test_config_path_from_environment(self):
        os.environ['CONFIG_PATH'] = self.write_config(self.valid_config, 'from-env.yaml')
        loader = ConfigLoader()
        self.assertTrue(loader.config_path.endswith('from-env.yaml'))
        self.assertEqual(loader.load()['github']['organization'], 'example-org')

    def test_nested_value_helpers(self):
        loader = ConfigLoader('unused.yaml')
        data = {}
        loader._set_nested_value(data, 'a.b.c', 1)
        self.assertEqual(data, {'a': {'b': {'c': 1}}})
        self.assertEqual(ConfigLoader._get_nested_value(data, 'a.b.c'), 1)
        self.assertIsNone(ConfigLoader._get_nested_value(data, 'a.x.c'))


if __name__ == '__main__':
    unittest.main()
