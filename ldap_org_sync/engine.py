"""
Sync engine.

Sequences one run: read both LDAP groups, read the GitHub organization,
snapshot the invitation store, compute the diff, execute the actions and
reconcile invitations. One run at a time per engine instance.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ldap_org_sync.actions import ActionOutcome, Failed, Invited, Skipped, execute_actions
from ldap_org_sync.config import ConfigurationError
from ldap_org_sync.diff import compute_diff, find_orphaned_members
from ldap_org_sync.errors import (
    SyncCancelledError,
    SyncError,
    SyncInProgressError,
    raise_if_cancelled,
)
from ldap_org_sync.ldap_client import LDAPQueryError
from ldap_org_sync.models import (
    ActionType,
    MappingHints,
    ReconcileResult,
    SourceGroups,
    SourceMember,
    SyncAction,
    SyncResult,
    SyncSummary,
    TargetMember,
)
from ldap_org_sync.reconcile import Reconciler
from ldap_org_sync.store import InvitationStore, StoreError
from ldap_org_sync.targets.base import TargetAPIError

logger = logging.getLogger(__name__)

__all__ = [
    'SyncEngine',
    'SyncError',
    'SyncInProgressError',
    'SyncCancelledError',
]


class SyncEngine:
    """
    Orchestrates a single LDAP -> GitHub organization sync.

    Args:
        ldap_client: Connected LDAPClient
        github_client: GitHubOrgAPI
        config: Full configuration dictionary (``ldap``, ``github`` and ``sync`` sections)
        store: Invitation store; None disables tracking and reconciliation
    """

    def __init__(self, ldap_client, github_client, config: Dict[str, Any],
                 store: Optional[InvitationStore] = None):
        ldap_config = config.get('ldap') or {}
        github_config = config.get('github') or {}
        sync_config = config.get('sync') or {}

        self.org = github_config.get('organization')
        self.members_group = ldap_config.get('members_group')
        self.owners_group = ldap_config.get('owners_group')

        missing = [name for name, value in (
            ('github.organization', self.org),
            ('ldap.members_group', self.members_group),
            ('ldap.owners_group', self.owners_group),
        ) if not value]
        if missing:
            raise ConfigurationError(f"Sync engine requires: {', '.join(missing)}")

        self.ldap_client = ldap_client
        self.github_client = github_client
        self.store = store
        self.dry_run = bool(sync_config.get('dry_run', True))
        self.ignore_suspended = bool(sync_config.get('ignore_suspended', True))
        self.remove_extra_members = bool(sync_config.get('remove_extra_members', False))

        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def sync(self, cancel_event: Optional[threading.Event] = None) -> SyncResult:
        """
        Run one sync.

        Raises:
            SyncInProgressError: If another run is active on this engine
            SyncCancelledError: If ``cancel_event`` fires during the run
            SyncError: If LDAP or GitHub membership cannot be listed
        """
        with self._lock:
            if self._running:
                raise SyncInProgressError("Sync already in progress")
            self._running = True

        try:
            return self._run(cancel_event)
        finally:
            with self._lock:
                self._running = False

    def _run(self, cancel_event: Optional[threading.Event]) -> SyncResult:
        start_time = datetime.now(timezone.utc)
        mode = "DRY RUN" if self.dry_run else "LIVE"
        logger.info(f"Starting sync of {self.org} ({mode})")

        source_groups = self._load_source_groups(cancel_event)
        logger.info(f"[1/5] LDAP groups loaded: {len(source_groups.members)} members, "
                    f"{len(source_groups.owners)} owners")

        target_members, pending_invites = self._load_target(cancel_event)
        mapping_hints = self._load_mapping_hints()
        verified_emails = self._load_verified_emails(cancel_event)
        logger.info(f"[2/5] GitHub organization loaded: {len(target_members)} members, "
                    f"{len(pending_invites)} pending invitations")

        actions = compute_diff(
            source_groups, target_members, pending_invites,
            self.remove_extra_members, mapping_hints, verified_emails
        )
        logger.info(f"[3/5] Diff calculated: {len(actions)} actions")

        if actions:
            logger.info(f"[4/5] Executing actions (dry_run={self.dry_run})")
        else:
            logger.info("[4/5] No actions to execute")
        outcomes = execute_actions(self.github_client, self.org, actions, self.dry_run, cancel_event)
        final_actions = [outcome.action for outcome in outcomes]

        reconciliation = None
        if self.store is not None and not self.dry_run:
            logger.info("[5/5] Running invitation reconciliation")
            reconciler = Reconciler(self.store, self.github_client, self.org, cancel_event)
            reconciliation = ReconcileResult.merge(
                reconciler.reconcile(final_actions),
                reconciler.complete_verified_mappings(verified_emails, source_groups),
            )
            self._purge_store()
        else:
            logger.info("[5/5] Invitation reconciliation skipped")

        orphaned = find_orphaned_members(source_groups, target_members, mapping_hints, verified_emails)
        if orphaned:
            logger.info(f"{len(orphaned)} organization members match no LDAP group member: "
                        f"{', '.join(orphaned)}")

        invited_users = [o.action.target_identifier for o in outcomes if isinstance(o, Invited)]
        already_present_users = [
            a.source_email or a.target_identifier for a in final_actions if a.already_present
        ]

        summary = build_summary(source_groups, target_members, pending_invites, outcomes)
        summary.already_present = len(already_present_users)
        summary.orphaned = len(orphaned)

        result = SyncResult(
            dry_run=self.dry_run,
            start_time=start_time,
            end_time=datetime.now(timezone.utc),
            actions=final_actions,
            summary=summary,
            invited_users=invited_users,
            already_present_users=already_present_users,
            orphaned_members=orphaned,
            reconciliation=reconciliation,
        )
        logger.info(f"Sync finished in {result.duration_ms} ms: {summary}")
        return result

    def _load_source_groups(self, cancel_event) -> SourceGroups:
        try:
            raise_if_cancelled(cancel_event, "LDAP members group listing")
            members = self.ldap_client.list_group_members(self.members_group)
            raise_if_cancelled(cancel_event, "LDAP owners group listing")
            owners = self.ldap_client.list_group_members(self.owners_group)
        except LDAPQueryError as e:
            raise SyncError(f"Failed to read LDAP groups: {e}") from e

        for label, group in (('members', members), ('owners', owners)):
            for member in group:
                logger.debug(f"  LDAP {label}: {member.email} (active={member.is_active})")

        if self.ignore_suspended:
            raise_if_cancelled(cancel_event, "LDAP suspension lookup")
            members, owners = self._apply_suspension(members, owners)

        return SourceGroups(members=members, owners=owners)

    def _apply_suspension(self, members: List[SourceMember], owners: List[SourceMember]):
        emails = []
        seen = set()
        for member in members + owners:
            key = member.email.lower()
            if key not in seen:
                seen.add(key)
                emails.append(member.email)

        try:
            suspended = self.ldap_client.get_suspension_status(emails)
        except LDAPQueryError as e:
            logger.warning(f"Could not read LDAP suspension status (continuing without it): {e}")
            return members, owners

        def mark(group):
            return [replace(m, suspended=bool(suspended.get(m.email.lower()))) for m in group]

        flagged = sum(1 for value in suspended.values() if value)
        if flagged:
            logger.info(f"{flagged} LDAP accounts are locked and will be treated as inactive")
        return mark(members), mark(owners)

    def _load_target(self, cancel_event):
        try:
            raise_if_cancelled(cancel_event, "GitHub member listing")
            target_members = self.github_client.list_members(self.org)
            raise_if_cancelled(cancel_event, "GitHub invitation listing")
            pending_invites = self.github_client.list_pending_invitations(self.org)
        except TargetAPIError as e:
            raise SyncError(f"Failed to read GitHub organization {self.org}: {e}") from e

        for member in target_members:
            logger.debug(f"  GitHub member: {member.account_handle} "
                         f"email={member.email} role={member.role.value}")
        for invite in pending_invites:
            logger.debug(f"  GitHub invitation {invite.invitation_id}: "
                         f"{invite.email or invite.account_handle}")
        return target_members, pending_invites

    def _load_mapping_hints(self) -> Optional[MappingHints]:
        if self.store is None:
            return None
        try:
            hints = MappingHints(
                resolved=self.store.resolved_mappings(self.org),
                pending_invitations=self.store.pending_invitation_hints(self.org),
            )
        except StoreError as e:
            logger.warning(f"Could not read invitation store (continuing without mappings): {e}")
            return None
        logger.debug(f"Loaded {len(hints.resolved)} resolved and "
                     f"{len(hints.pending_invitations)} pending mappings")
        return hints

    def _load_verified_emails(self, cancel_event) -> Optional[Dict[str, str]]:
        raise_if_cancelled(cancel_event, "verified email lookup")
        try:
            return self.github_client.list_verified_domain_emails(self.org)
        except TargetAPIError as e:
            logger.warning(f"Could not fetch verified domain emails (continuing without them): {e}")
            return None

    def _purge_store(self):
        try:
            self.store.purge_expired()
        except StoreError as e:
            logger.warning(f"Could not purge expired invitation records: {e}")


def build_summary(source_groups: SourceGroups, target_members: List[TargetMember],
                  pending_invites: List[TargetMember],
                  outcomes: List[ActionOutcome]) -> SyncSummary:
    """Count planned, executed and failed actions, and actions by type."""
    summary = SyncSummary(
        total_source_members=len(source_groups.all_members()),
        total_target_members=len(target_members),
        pending_invitations=len(pending_invites),
        actions_planned=len(outcomes),
    )

    for outcome in outcomes:
        action: SyncAction = outcome.action
        if action.executed:
            summary.actions_executed += 1
        if isinstance(outcome, Failed):
            summary.actions_failed += 1
        if isinstance(outcome, Skipped) and action.type == ActionType.SKIP:
            summary.skipped += 1
            continue

        if action.type == ActionType.INVITE:
            summary.invited += 1
        elif action.type == ActionType.REMOVE:
            summary.removed += 1
        elif action.type == ActionType.UPDATE_ROLE:
            summary.role_updated += 1
        elif action.type == ActionType.CANCEL_INVITE:
            summary.cancelled_invites += 1

    return summary
