"""
Logging setup and configuration for LDAP Org Sync.

Configures the root logger once per process: a daily rotating ``app.log``
in the configured directory, an optional console handler, retention cleanup
of rotated files, and a filter that masks credentials and GitHub tokens.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, List


class SensitiveDataFilter(logging.Filter):
    """Mask passwords, tokens and other secrets in log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'authorization', 'api_key', 'client_secret',
        'access_token', 'refresh_token',
    ]

    # Classic, OAuth, app installation and fine-grained GitHub tokens
    GITHUB_TOKEN_PATTERN = re.compile(r'\b(ghp_|gho_|ghu_|ghs_|ghr_|github_pat_)[A-Za-z0-9_]+')
    AUTH_HEADER_PATTERN = re.compile(r'(Authorization:\s*(?:Bearer|Basic|token)\s+)[^\s,}\]]+',
                                     re.IGNORECASE)

    def __init__(self, name: str = ''):
        super().__init__(name)
        keywords = '|'.join(self.SENSITIVE_KEYWORDS)
        self._assignment = re.compile(rf'\b({keywords})(\s*=\s*)[^\s,}}\]]+', re.IGNORECASE)
        self._json_quoted = re.compile(rf'("(?:{keywords})"\s*:\s*")[^"]*(")', re.IGNORECASE)
        self._json_bare = re.compile(rf'("(?:{keywords})"\s*:\s*)([^",}}\s]+)', re.IGNORECASE)

    def scrub(self, text: str) -> str:
        text = self._assignment.sub(r'\1\2****', text)
        text = self._json_quoted.sub(r'\1****\2', text)
        text = self._json_bare.sub(r'\1****', text)
        text = self.AUTH_HEADER_PATTERN.sub(r'\1****', text)
        text = self.GITHUB_TOKEN_PATTERN.sub(r'\1****', text)
        return text

    def filter(self, record):
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                pass
        record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for the application.

    Provides file-based logging with rotation and retention, plus console
    output for container and cron use.
    """

    LOG_FILE = 'app.log'

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any], force: bool = False) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            force: Reconfigure even if logging was already set up
        """
        if self.configured and not force:
            return

        logging_config = config or {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = str(logging_config.get('rotation', 'daily'))
        self.retention_days = int(logging_config.get('retention_days', 7))
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(message)s',
                datefmt='%H:%M:%S'
            ))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self.cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        if not self.log_dir:
            self.log_dir = '.'
            return
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: Could not create log directory {self.log_dir}: {e}; logging to current directory")
            self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler for the rotation setting.

        Args:
            rotation: 'daily' / 'midnight' for a rotated file, anything else for a plain file
        """
        log_file = os.path.join(self.log_dir, self.LOG_FILE)

        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler

        return logging.FileHandler(log_file, encoding='utf-8')

    def cleanup_old_logs(self) -> List[str]:
        """Delete rotated log files older than the retention period. Returns removed paths."""
        removed = []
        if not self.log_dir or self.retention_days <= 0:
            return removed

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, self.LOG_FILE + '*')):
            if log_file.endswith(self.LOG_FILE):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff:
                    os.remove(log_file)
                    removed.append(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")
        return removed


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any], force: bool = False) -> None:
    """
    Set up process-wide logging.

    Args:
        config: ``logging`` section of the configuration
        force: Reconfigure even if logging was already set up
    """
    _logging_manager.setup_logging(config, force=force)


class MembershipAuditLogger:
    """Writes one line per organization change to the ``audit`` logger."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_action(self, org: str, action) -> None:
        status = "SUCCESS" if action.executed else ("FAILURE" if action.error else "PLANNED")
        message = f"{status}: {action.type.value} {action.target_identifier} org={org}"
        if action.desired_role is not None:
            message += f" role={action.desired_role.value}"
        if action.source_email and action.source_email != action.target_identifier:
            message += f" email={action.source_email}"
        if action.error:
            message += f" error={action.error}"
        if action.error:
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_run(self, org: str, result) -> None:
        for action in result.actions:
            self.log_action(org, action)


audit_logger = MembershipAuditLogger()
