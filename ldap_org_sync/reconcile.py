"""
Invitation reconciliation.

Closes the gap between an invited email address and the GitHub login that
eventually accepts it. Each phase reads a different GitHub signal, advances
records in the invitation store, and reports its own ``ReconcileResult``.
Failures on one record are recorded and never stop the phase.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from ldap_org_sync.errors import raise_if_cancelled
from ldap_org_sync.models import (
    ActionType,
    InvitationStatus,
    OrgRole,
    ReconcileResult,
    SourceGroups,
    SyncAction,
    existing_key,
    invitation_key,
)
from ldap_org_sync.store import InvitationStore, StoreError
from ldap_org_sync.targets.base import TargetAPIError

logger = logging.getLogger(__name__)

INVITATION_EXPIRY_DAYS = 7


class Reconciler:
    """Advances invitation records using GitHub's pending, audit and failure signals."""

    def __init__(self, store: InvitationStore, client, org: str,
                 cancel_event: Optional[threading.Event] = None,
                 expiry_days: int = INVITATION_EXPIRY_DAYS):
        self.store = store
        self.client = client
        self.org = org
        self.cancel_event = cancel_event
        self.expiry_days = expiry_days

    def _check_cancelled(self, stage: str):
        raise_if_cancelled(self.cancel_event, stage)

    def reconcile(self, actions: List[SyncAction]) -> ReconcileResult:
        """
        Run phases 1 to 4 and merge their results.

        Args:
            actions: Actions as returned by the executor (derived from the outcomes)
        """
        result = ReconcileResult.merge(
            self.persist_new_work(actions),
            self.resolve_from_pending_list(),
            self.resolve_from_audit_log(),
            self.sweep_failed_and_expired(),
        )
        logger.info(
            f"Invitation reconciliation completed: saved={result.new_saved} "
            f"resolved={result.resolved} failed={result.failed} expired={result.expired} "
            f"cancelled={result.cancelled} removed={result.members_removed} "
            f"roles_updated={result.roles_updated} "
            f"already_present_resolved={result.already_present_resolved} "
            f"errors={len(result.errors)}"
        )
        return result

    # Phase 1

    def persist_new_work(self, actions: List[SyncAction]) -> ReconcileResult:
        """
        Record the effects of the executed actions in the store.

        Every executed action is persisted before cancellation is honoured,
        since the change has already happened on GitHub.
        """
        result = ReconcileResult()

        for action in actions:
            if not action.executed:
                continue

            try:
                if action.type == ActionType.INVITE and action.invitation_id is not None:
                    self._save_invitation(action)
                    result.new_saved += 1

                elif action.type == ActionType.CANCEL_INVITE and action.invitation_id is not None:
                    if self.store.update_status(self.org, invitation_key(action.invitation_id),
                                                InvitationStatus.CANCELLED):
                        logger.info(f"Invitation {action.invitation_id} for "
                                    f"{action.target_identifier} marked cancelled")
                        result.cancelled += 1

                elif action.type == ActionType.REMOVE and action.source_email:
                    result.members_removed += self._mark_removed(action)

                elif action.type == ActionType.UPDATE_ROLE and action.source_email and action.desired_role:
                    result.roles_updated += self._update_roles(action)

                if action.already_present and action.resolved_account:
                    if self._save_existing_member(action):
                        result.already_present_resolved += 1

            except (StoreError, TargetAPIError) as e:
                message = f"Recording {action.type.value} {action.target_identifier}: {e}"
                logger.warning(message)
                result.errors.append(message)

        self._check_cancelled("recording executed actions")
        return result

    def _save_invitation(self, action: SyncAction):
        record = self.store.new_pending(
            self.org, action.invitation_id, action.target_identifier,
            action.desired_role or OrgRole.MEMBER
        )
        self.store.save(record)
        logger.info(f"Saved invitation {action.invitation_id} for {action.target_identifier}")

    def _resolved_records_for(self, email: str):
        return [
            record for record in self.store.query_by_email(self.org, email)
            if record.status == InvitationStatus.RESOLVED
        ]

    def _mark_removed(self, action: SyncAction) -> int:
        removed = 0
        for record in self._resolved_records_for(action.source_email):
            if self.store.update_status(self.org, record.record_key, InvitationStatus.REMOVED):
                logger.info(f"Member {action.target_identifier} ({action.source_email}) "
                            f"removed, record {record.record_key} marked removed")
                removed += 1
        return removed

    def _update_roles(self, action: SyncAction) -> int:
        updated = 0
        for record in self._resolved_records_for(action.source_email):
            if self.store.update_role(self.org, record.record_key, action.desired_role):
                logger.info(f"Record {record.record_key} role set to {action.desired_role.value}")
                updated += 1
        return updated

    def _save_existing_member(self, action: SyncAction) -> bool:
        login = action.resolved_account
        if self.store.find_resolved_by_account(self.org, login):
            logger.debug(f"{login} already has a resolved mapping, not writing another")
            return False

        email = action.source_email or action.target_identifier
        record = self.store.new_existing(
            self.org, existing_key(login), email, login, action.desired_role or OrgRole.MEMBER
        )
        self.store.save(record)
        logger.info(f"Recorded already-present member {login} for {email}")
        return True

    # Phase 2

    def resolve_from_pending_list(self) -> ReconcileResult:
        """
        Resolve pending records whose live invitation now exposes a login.

        A live invitation with no record (its run was interrupted before the
        record was written) is backfilled as pending first, so this phase or
        the audit log phase can resolve it.
        """
        result = ReconcileResult()
        self._check_cancelled("listing pending invitations")

        try:
            invitations = self.client.list_pending_invitations(self.org)
        except TargetAPIError as e:
            result.errors.append(f"Listing pending invitations: {e}")
            return result

        for invitation in invitations:
            if invitation.invitation_id is None:
                continue
            self._check_cancelled("resolving from pending invitations")
            if self._backfill_pending(invitation, result):
                result.new_saved += 1
            if invitation.account_handle and self._resolve(
                    invitation.invitation_id, invitation.account_handle, 'pending invitation', result):
                result.resolved += 1

        return result

    def _backfill_pending(self, invitation, result: ReconcileResult) -> bool:
        if not invitation.email:
            return False
        try:
            if self.store.get_invitation(self.org, invitation.invitation_id) is not None:
                return False
            self.store.save(self.store.new_pending(
                self.org, invitation.invitation_id, invitation.email, invitation.role or OrgRole.MEMBER
            ))
        except StoreError as e:
            message = f"Recording untracked invitation {invitation.invitation_id}: {e}"
            logger.warning(message)
            result.errors.append(message)
            return False

        logger.info(f"Recorded untracked invitation {invitation.invitation_id} for {invitation.email}")
        return True

    def _resolve(self, invitation_id: int, login: str, via: str, result: ReconcileResult) -> bool:
        try:
            record = self.store.get_invitation(self.org, invitation_id)
            if record is None or record.status != InvitationStatus.PENDING:
                return False
            if not self.store.resolve(self.org, record.record_key, login):
                return False
        except StoreError as e:
            message = f"Resolving invitation {invitation_id} via {via}: {e}"
            logger.warning(message)
            result.errors.append(message)
            return False

        logger.info(f"Mapping resolved via {via}: {record.email} -> {login} "
                    f"(invitation {invitation_id})")
        return True

    # Phase 3

    def resolve_from_audit_log(self) -> ReconcileResult:
        """Resolve pending records from ``org.add_member`` events after the stored cursor."""
        result = ReconcileResult()
        self._check_cancelled("reading the audit log")

        try:
            cursor = self.store.get_audit_cursor(self.org) or 0
        except StoreError as e:
            result.errors.append(f"Reading audit log cursor: {e}")
            return result

        try:
            events = self.client.list_add_member_audit_events(self.org, cursor)
        except TargetAPIError as e:
            result.errors.append(f"Fetching audit log: {e}")
            return result

        for event in events:
            if event.invitation_id is None or not event.account_handle:
                continue
            self._check_cancelled("resolving from the audit log")
            if self._resolve(event.invitation_id, event.account_handle, 'audit log', result):
                result.resolved += 1

        if events:
            latest = max(event.timestamp_ms for event in events)
            if latest > cursor:
                try:
                    self.store.save_audit_cursor(self.org, latest)
                except StoreError as e:
                    result.errors.append(f"Saving audit log cursor: {e}")

        return result

    # Phase 4

    def sweep_failed_and_expired(self, now: Optional[datetime] = None) -> ReconcileResult:
        """
        Mark failed invitations, then expire stale pending ones.

        The failure list is applied first so that a failed invitation is never
        also counted as expired. Without a failure list the expiry sweep is
        skipped for this run.
        """
        result = ReconcileResult()
        self._check_cancelled("listing failed invitations")

        try:
            failed_invitations = self.client.list_failed_invitations(self.org)
        except TargetAPIError as e:
            result.errors.append(f"Listing failed invitations: {e}")
            return result

        failed_ids = set()
        for invitation in failed_invitations:
            if invitation.invitation_id is None:
                continue
            failed_ids.add(invitation.invitation_id)
            if self._transition_pending(invitation.invitation_id, InvitationStatus.FAILED, result):
                logger.warning(f"Invitation {invitation.invitation_id} failed")
                result.failed += 1

        self._check_cancelled("expiry sweep")
        try:
            pending_records = self.store.query_by_status(self.org, InvitationStatus.PENDING)
        except StoreError as e:
            result.errors.append(f"Reading pending records for expiry check: {e}")
            return result

        try:
            live_pending = self.client.list_pending_invitations(self.org)
        except TargetAPIError as e:
            result.errors.append(f"Listing pending invitations for expiry check: {e}")
            return result
        live_ids = {invitation.invitation_id for invitation in live_pending
                    if invitation.invitation_id is not None}

        now = now or datetime.now(timezone.utc)
        threshold = timedelta(days=self.expiry_days)
        for record in pending_records:
            invitation_id = record.invitation_id
            if invitation_id is None or invitation_id in failed_ids or invitation_id in live_ids:
                continue
            if now - record.invited_at <= threshold:
                continue
            if self._transition_pending(invitation_id, InvitationStatus.EXPIRED, result):
                logger.warning(f"Invitation {invitation_id} for {record.email} expired "
                               f"(invited {record.invited_at.isoformat()})")
                result.expired += 1

        return result

    def _transition_pending(self, invitation_id: int, status: InvitationStatus,
                            result: ReconcileResult) -> bool:
        try:
            record = self.store.get_invitation(self.org, invitation_id)
            if record is None or record.status != InvitationStatus.PENDING:
                return False
            return self.store.update_status(self.org, record.record_key, status)
        except StoreError as e:
            message = f"Marking invitation {invitation_id} {status.value}: {e}"
            logger.warning(message)
            result.errors.append(message)
            return False

    # Phase 5

    def complete_verified_mappings(self, verified_hints: Optional[Dict[str, str]],
                                   source_groups: SourceGroups) -> ReconcileResult:
        """Create resolved records for desired members recognized through verified domain emails."""
        result = ReconcileResult()
        if not verified_hints:
            return result

        desired = source_groups.desired_roles()
        for email, login in verified_hints.items():
            entry = desired.get(email.lower())
            if entry is None or not login:
                continue
            self._check_cancelled("completing verified email mappings")

            desired_email, role = entry
            try:
                if any(record.account_handle for record in self._resolved_records_for(desired_email)):
                    continue
                if self.store.find_resolved_by_account(self.org, login):
                    continue
                self.store.save(self.store.new_existing(
                    self.org, existing_key(login), desired_email, login, role
                ))
            except StoreError as e:
                message = f"Saving verified email mapping for {desired_email} ({login}): {e}"
                logger.warning(message)
                result.errors.append(message)
                continue

            logger.info(f"Mapped existing member {login} to {desired_email} via verified domain email")
            result.verified_emails_mapped += 1

        return result
