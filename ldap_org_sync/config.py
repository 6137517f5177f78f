"""
Configuration loading and management for LDAP Org Sync.

Loads the YAML configuration file, applies environment variable overrides,
validates required fields and fills in defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off')


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # config key -> (environment variable, type)
    ENV_OVERRIDES = {
        'ldap.bind_password': ('LDAP_BIND_PASSWORD', str),
        'github.organization': ('GITHUB_ORG', str),
        'github.token': ('GITHUB_TOKEN', str),
        'sync.dry_run': ('DRY_RUN', bool),
        'sync.ignore_suspended': ('IGNORE_SUSPENDED', bool),
        'sync.remove_extra_members': ('REMOVE_EXTRA_MEMBERS', bool),
        'store.enabled': ('STORE_ENABLED', bool),
        'store.path': ('STORE_PATH', str),
        'store.ttl_days': ('STORE_TTL_DAYS', int),
        'notifications.smtp_password': ('SMTP_PASSWORD', str),
    }

    REQUIRED_FIELDS = [
        'ldap.server_url',
        'ldap.bind_dn',
        'ldap.bind_password',
        'ldap.members_group',
        'ldap.owners_group',
        'github.organization',
        'github.token',
    ]

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        for config_key, (env_var, value_type) in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value is None or env_value == '':
                continue
            self._set_nested_value(self.config, config_key, self._coerce(env_var, env_value, value_type))
            logger.debug(f"Applied environment override for {config_key}")

    @staticmethod
    def _coerce(env_var: str, value: str, value_type: type) -> Any:
        if value_type is bool:
            lowered = value.strip().lower()
            if lowered in TRUE_VALUES:
                return True
            if lowered in FALSE_VALUES:
                return False
            raise ConfigurationError(f"Invalid boolean for {env_var}: {value}")
        if value_type is int:
            try:
                return int(value)
            except ValueError:
                raise ConfigurationError(f"Invalid integer for {env_var}: {value}")
        return value

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    @staticmethod
    def _get_nested_value(config: Dict, key_path: str) -> Any:
        current = config
        for key in key_path.split('.'):
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        return current

    def _validate(self):
        """Validate required configuration fields, reporting every problem at once."""
        errors = []

        for key_path in self.REQUIRED_FIELDS:
            if not self._get_nested_value(self.config, key_path):
                errors.append(f"Missing required field: {key_path}")

        ttl_days = self._get_nested_value(self.config, 'store.ttl_days')
        if ttl_days is not None and (not isinstance(ttl_days, int) or isinstance(ttl_days, bool) or ttl_days <= 0):
            errors.append(f"store.ttl_days must be a positive integer, got {ttl_days!r}")

        members_group = self._get_nested_value(self.config, 'ldap.members_group')
        owners_group = self._get_nested_value(self.config, 'ldap.owners_group')
        if members_group and owners_group and members_group.lower() == owners_group.lower():
            errors.append("ldap.members_group and ldap.owners_group must be different groups")

        notifications = self.config.get('notifications') or {}
        if notifications.get('enable_email'):
            for field in ('smtp_server', 'email_from', 'email_to'):
                if not notifications.get(field):
                    errors.append(f"Missing notifications.{field} (required when enable_email is true)")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        defaults = {
            'ldap': {
                'user_base_dn': '',
                'user_filter': '(objectClass=person)',
                'email_attribute': 'mail',
                'use_memberof': True,
            },
            'github': {
                'base_url': 'https://api.github.com',
                'verify_ssl': True,
                'enrich_public_emails': True,
            },
            'sync': {
                'dry_run': True,
                'ignore_suspended': True,
                'remove_extra_members': False,
            },
            'store': {
                'enabled': False,
                'path': 'invitations.db',
                'ttl_days': 90,
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7,
                'console_output': True,
                'console_level': 'WARNING',
            },
            'error_handling': {
                'max_retries': 3,
                'retry_wait_seconds': 5,
            },
            'notifications': {
                'enable_email': False,
                'email_on_failure': True,
                'email_on_success': False,
                'smtp_port': 587,
                'smtp_tls': True,
            },
        }

        for section, section_defaults in defaults.items():
            section_config = self.config.get(section)
            if not isinstance(section_config, dict):
                section_config = {}
                self.config[section] = section_config
            for key, value in section_defaults.items():
                section_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
