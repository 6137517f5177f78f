"""
Diff engine.

Compares the desired state (LDAP members and owners groups) with the current
GitHub organization and produces the list of corrective actions. Pure: no
I/O beyond logging.
"""

import logging
from typing import Dict, List, Optional

from ldap_org_sync.models import (
    ActionType,
    MappingHints,
    SourceGroups,
    SyncAction,
    TargetMember,
)

logger = logging.getLogger(__name__)


def _reverse_lookups(target_members: List[TargetMember],
                     mapping_hints: Optional[MappingHints],
                     verified_email_hints: Optional[Dict[str, str]]):
    """
    Merge store mappings and verified emails into a login -> emails index.

    Store mappings win over verified emails for the same address. A login may
    be linked to several emails (an address changed in LDAP). Also returns
    the hint emails whose login is a current member (these count as known).
    """
    logins_in_org = {
        member.account_handle.lower() for member in target_members if member.account_handle
    }

    login_by_email = {}
    emails_by_login = {}
    known_via_hints = set()

    sources = []
    if mapping_hints is not None:
        sources.append(mapping_hints.resolved)
    if verified_email_hints:
        sources.append(verified_email_hints)

    for hints in sources:
        for email, login in hints.items():
            if not email or not login:
                continue
            email_key = email.lower()
            login_key = login.lower()
            if email_key not in login_by_email:
                login_by_email[email_key] = login
                emails_by_login.setdefault(login_key, []).append(email_key)
            if login_key in logins_in_org:
                known_via_hints.add(email_key)

    return emails_by_login, known_via_hints


def _linked_email(emails: Optional[List[str]], desired) -> Optional[str]:
    """The first of a login's linked emails that is desired, else the oldest link."""
    if not emails:
        return None
    for email in emails:
        if email in desired:
            return email
    return emails[0]


def compute_diff(source_groups: SourceGroups,
                 target_members: List[TargetMember],
                 pending_invites: List[TargetMember],
                 remove_extra_members: bool,
                 mapping_hints: Optional[MappingHints] = None,
                 verified_email_hints: Optional[Dict[str, str]] = None) -> List[SyncAction]:
    """
    Compute the actions that bring the organization in line with LDAP.

    Args:
        source_groups: Members and owners groups read from LDAP
        target_members: Current organization members
        pending_invites: Open organization invitations
        remove_extra_members: Remove every member absent from LDAP (aggressive)
            instead of only members this tool is known to have added
        mapping_hints: Resolved and pending correlations from the invitation
            store, or None when no tracking data is available
        verified_email_hints: Lowercase verified domain email -> login

    Returns:
        Invites, removals, cancellations and role updates, in that order
    """
    known = set()
    for entry in list(target_members) + list(pending_invites):
        identifier = entry.identifier.lower()
        if identifier:
            known.add(identifier)

    emails_by_login, known_via_hints = _reverse_lookups(
        target_members, mapping_hints, verified_email_hints
    )
    known |= known_via_hints

    # Store-only index for conservative removal
    tracked_emails_by_login = {}
    if mapping_hints is not None:
        for email, login in mapping_hints.resolved.items():
            if email and login:
                tracked_emails_by_login.setdefault(login.lower(), []).append(email.lower())

    desired = source_groups.desired_roles()

    invites = []
    for key, (email, role) in desired.items():
        if key in known:
            continue
        invites.append(SyncAction(
            type=ActionType.INVITE,
            target_identifier=email,
            source_email=email,
            desired_role=role,
            reason='missing in GitHub organization',
        ))

    active_members = [
        member for member in target_members
        if not member.is_pending and member.account_handle
    ]

    removes = []
    if remove_extra_members:
        for member in active_members:
            identifier = member.identifier.lower()
            login = member.account_handle.lower()
            if identifier in desired:
                continue
            linked_email = _linked_email(emails_by_login.get(login), desired)
            if linked_email and linked_email in desired:
                continue
            removes.append(SyncAction(
                type=ActionType.REMOVE,
                target_identifier=member.account_handle,
                source_email=linked_email,
                current_role=member.role,
                reason='missing from LDAP groups',
            ))
    elif mapping_hints is not None:
        for member in active_members:
            tracked_email = _linked_email(
                tracked_emails_by_login.get(member.account_handle.lower()), desired
            )
            if tracked_email is None:
                logger.debug(f"{member.account_handle} has no tracked mapping, leaving untouched")
                continue
            if tracked_email in desired or member.identifier.lower() in desired:
                continue
            removes.append(SyncAction(
                type=ActionType.REMOVE,
                target_identifier=member.account_handle,
                source_email=tracked_email,
                current_role=member.role,
                reason='removed from LDAP groups (tracked mapping)',
            ))
    else:
        logger.info("No tracking data available, conservative removal skipped")

    cancels = []
    if mapping_hints is not None:
        cancelled_ids = set()
        for invite in pending_invites:
            if not invite.email or invite.invitation_id is None:
                continue
            if invite.email.lower() in desired:
                continue
            cancelled_ids.add(invite.invitation_id)
            cancels.append(SyncAction(
                type=ActionType.CANCEL_INVITE,
                target_identifier=invite.email,
                source_email=invite.email,
                invitation_id=invite.invitation_id,
                reason='removed from LDAP groups, cancelling pending invitation',
            ))
        for email, invitation_id in mapping_hints.pending_invitations.items():
            if email.lower() in desired or invitation_id in cancelled_ids:
                continue
            cancelled_ids.add(invitation_id)
            cancels.append(SyncAction(
                type=ActionType.CANCEL_INVITE,
                target_identifier=email,
                source_email=email,
                invitation_id=invitation_id,
                reason='removed from LDAP groups, cancelling tracked invitation',
            ))

    role_updates = []
    for member in active_members:
        identifier = member.identifier.lower()
        login = member.account_handle.lower()

        if identifier in desired:
            matched_email = identifier
        else:
            matched_email = _linked_email(emails_by_login.get(login), desired)
        if matched_email is None or matched_email not in desired:
            continue

        desired_role = desired[matched_email][1]
        if member.role == desired_role:
            continue
        role_updates.append(SyncAction(
            type=ActionType.UPDATE_ROLE,
            target_identifier=member.account_handle,
            source_email=matched_email,
            current_role=member.role,
            desired_role=desired_role,
            reason='role mismatch',
        ))

    actions = invites + removes + cancels + role_updates
    logger.info(f"Diff computed: {len(invites)} invites, {len(removes)} removals, "
                f"{len(cancels)} cancellations, {len(role_updates)} role updates")
    return actions


def find_orphaned_members(source_groups: SourceGroups,
                          target_members: List[TargetMember],
                          mapping_hints: Optional[MappingHints] = None,
                          verified_email_hints: Optional[Dict[str, str]] = None) -> List[str]:
    """
    Logins of members that match no desired email, directly or through a mapping.

    Reported only; no action is derived from this list.
    """
    emails_by_login, _ = _reverse_lookups(target_members, mapping_hints, verified_email_hints)
    desired = source_groups.desired_roles()

    orphaned = []
    for member in target_members:
        if member.is_pending or not member.account_handle:
            continue
        if member.identifier.lower() in desired:
            continue
        linked_email = _linked_email(emails_by_login.get(member.account_handle.lower()), desired)
        if linked_email and linked_email in desired:
            continue
        orphaned.append(member.account_handle)
    return orphaned
