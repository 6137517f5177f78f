"""
Main orchestrator for LDAP Org Sync.

Loads configuration, sets up logging, builds the LDAP, GitHub and store
collaborators, runs one sync through the engine and maps the outcome to a
process exit code.
"""

import sys
import json
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_org_sync.config import load_config, ConfigurationError
from ldap_org_sync.engine import SyncEngine, SyncError, SyncInProgressError
from ldap_org_sync.ldap_client import LDAPClient, LDAPConnectionError
from ldap_org_sync.logging_setup import setup_logging, audit_logger
from ldap_org_sync.notifications import (
    send_failure_notification,
    send_run_failure_summary,
    send_success_summary,
    test_notification_config,
)
from ldap_org_sync.store import InvitationStore, StoreError
from ldap_org_sync.targets.github import GitHubOrgAPI

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_LDAP_CONNECTION_ERROR = 3
EXIT_FATAL_ERROR = 4


class SyncOrchestrator:
    """
    Runs one LDAP -> GitHub organization sync from a configuration file.

    Owns the lifetime of the LDAP connection, the GitHub HTTP connection and
    the invitation store for the duration of a run.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run_override: Optional[bool] = None):
        """
        Args:
            config_path: Path to configuration file
            dry_run_override: Overrides ``sync.dry_run`` when not None
        """
        self.config_path = config_path
        self.dry_run_override = dry_run_override
        self.config = None
        self.ldap_client = None
        self.github_client = None
        self.store = None
        self.result = None

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            org = self.config['github']['organization']
            logger.info(f"Starting LDAP Org Sync for {org}")

            self._connect_ldap()
            self._create_github_client()
            self._open_store()

            engine = SyncEngine(self.ldap_client, self.github_client, self.config, self.store)
            self.result = engine.sync()

            audit_logger.log_run(org, self.result)
            self._log_sync_summary()

            if not self.result.is_success:
                logger.warning(f"Sync completed with {self.result.summary.actions_failed} failed actions")
                self._send_run_failure_summary()
                return EXIT_PARTIAL_FAILURE

            self._send_success_notification()
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_failure_notification("LDAP Connection Failure", str(e), {
                'LDAP Server': self._ldap_setting('server_url'),
                'Retry Attempts': self._error_handling().get('max_retries', 3),
            })
            return EXIT_LDAP_CONNECTION_ERROR
        except SyncInProgressError as e:
            logger.error(f"Sync rejected: {e}")
            return EXIT_FATAL_ERROR
        except (SyncError, StoreError) as e:
            logger.error(f"Sync failed: {e}")
            self._send_failure_notification("Sync Failed", str(e))
            return EXIT_FATAL_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_FATAL_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load configuration and apply the command line dry-run override."""
        self.config = load_config(self.config_path)
        if self.dry_run_override is not None:
            self.config.setdefault('sync', {})['dry_run'] = self.dry_run_override
        logger.debug("Configuration loaded successfully")

    def _error_handling(self) -> Dict[str, Any]:
        if not self.config:
            return {}
        return self.config.get('error_handling', {})

    def _ldap_setting(self, key: str) -> Any:
        if not self.config:
            return None
        return self.config.get('ldap', {}).get(key)

    def _ldap_config(self) -> Dict[str, Any]:
        ldap_config = dict(self.config['ldap'])
        ldap_config['error_handling'] = self._error_handling()
        return ldap_config

    def _connect_ldap(self):
        self.ldap_client = LDAPClient(self._ldap_config())
        try:
            self.ldap_client.connect()
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _create_github_client(self):
        self.github_client = GitHubOrgAPI(self.config['github'], self._error_handling())

    def _open_store(self):
        store_config = self.config.get('store', {})
        if not store_config.get('enabled', False):
            logger.info("Invitation store disabled; reconciliation will be skipped")
            return
        self.store = InvitationStore(store_config.get('path', 'invitations.db'),
                                     ttl_days=store_config.get('ttl_days', 90))
        logger.info(f"Invitation store opened at {store_config.get('path')}")

    def _notifications_config(self) -> Dict[str, Any]:
        if not self.config:
            return {}
        return self.config.get('notifications', {})

    def _send_failure_notification(self, title: str, error_message: str,
                                   additional_info: Optional[Dict[str, Any]] = None):
        send_failure_notification(title, error_message, self._notifications_config(), additional_info)

    def _send_run_failure_summary(self):
        send_run_failure_summary(self.result, self._notifications_config(),
                                 self.config['github']['organization'])

    def _send_success_notification(self):
        send_success_summary(self.result, self._notifications_config(),
                             self.config['github']['organization'])

    def _log_sync_summary(self):
        result = self.result
        logger.info("=== Sync Summary ===")
        logger.info(f"Mode: {'dry run' if result.dry_run else 'live'}")
        logger.info(f"Duration: {result.duration_ms} ms")
        logger.info(str(result.summary))
        if result.invited_users:
            logger.info(f"Invited: {', '.join(result.invited_users)}")
        if result.already_present_users:
            logger.info(f"Already present: {', '.join(result.already_present_users)}")
        if result.reconciliation is not None:
            logger.info(f"Reconciliation: {result.reconciliation.to_dict()}")

    def write_result(self, path: str):
        """Write the last run's result as JSON."""
        if self.result is None:
            logger.warning("No sync result to write")
            return
        with open(path, 'w') as f:
            json.dump(self.result.to_dict(), f, indent=2)
        logger.info(f"Sync result written to {path}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, LDAP, GitHub and the invitation store.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }
        checks = health_status['checks']

        def fail(name: str, message: str):
            checks[name] = {'status': 'fail', 'message': message}
            health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            checks['configuration'] = {'status': 'pass', 'message': 'Configuration loaded successfully'}
        except ConfigurationError as e:
            fail('configuration', f'Configuration error: {e}')
            return health_status

        ldap_config = self._ldap_config()
        ldap_config['error_handling'] = {'max_retries': 1, 'retry_wait_seconds': 1}
        ldap_client = LDAPClient(ldap_config)
        try:
            if not ldap_client.test_connection():
                fail('ldap', 'LDAP connection failed')
            else:
                missing = [dn for dn in (ldap_config['members_group'], ldap_config['owners_group'])
                           if not ldap_client.validate_group_dn(dn)]
                if missing:
                    fail('ldap', f"LDAP groups not found: {', '.join(missing)}")
                else:
                    checks['ldap'] = {'status': 'pass', 'message': 'LDAP connection and groups valid'}
        finally:
            ldap_client.disconnect()

        github_client = GitHubOrgAPI(self.config['github'], {'max_retries': 0})
        try:
            ok, message = github_client.test_connection()
        finally:
            github_client.close_connection()
        if ok:
            checks['github'] = {'status': 'pass', 'message': message}
        else:
            fail('github', message)

        store_config = self.config.get('store', {})
        if store_config.get('enabled', False):
            try:
                with InvitationStore(store_config.get('path', 'invitations.db'),
                                     ttl_days=store_config.get('ttl_days', 90)) as store:
                    count = store.count(self.config['github']['organization'])
                checks['store'] = {'status': 'pass', 'message': f'Invitation store readable ({count} records)'}
            except StoreError as e:
                fail('store', f'Invitation store error: {e}')
        else:
            checks['store'] = {'status': 'skip', 'message': 'Invitation store disabled'}

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            checks['notifications'] = {'status': 'pass', 'message': 'Email notification configuration valid'}
        else:
            checks['notifications'] = {'status': 'skip', 'message': 'Email notifications disabled'}

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
            self.ldap_client = None
        if self.github_client:
            self.github_client.close_connection()
            self.github_client = None
        if self.store:
            self.store.close()
            self.store = None


def main(argv=None) -> int:
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Mirror LDAP group membership into a GitHub organization')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--dry-run', dest='dry_run', action='store_const', const=True, default=None,
                      help='Compute and log actions without changing the organization')
    mode.add_argument('--apply', dest='dry_run', action='store_const', const=False,
                      help='Apply the computed actions')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    parser.add_argument('--output-json', metavar='PATH',
                        help='Write the sync result as JSON to PATH')

    args = parser.parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run_override=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        return 0 if health_status['status'] == 'healthy' else 1

    if args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            return 1
        if test_notification_config(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            return 0
        print("Failed to send test email")
        return 1

    exit_code = orchestrator.run()
    if args.output_json:
        orchestrator.write_result(args.output_json)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
