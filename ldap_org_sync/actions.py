"""
Action executor.

Applies planned ``SyncAction``s to the GitHub organization. Actions are
immutable; each one yields an outcome holding a derived action that records
what happened. Per-action API failures are captured on the outcome and never
abort the batch.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import List, Optional, Union

from ldap_org_sync.errors import raise_if_cancelled
from ldap_org_sync.models import ActionType, SyncAction
from ldap_org_sync.targets.base import AlreadyMemberError, TargetAPIError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Invited:
    """Invitation created."""
    action: SyncAction


@dataclass(frozen=True)
class Applied:
    """Removal, role update or cancellation applied."""
    action: SyncAction


@dataclass(frozen=True)
class UpgradedToRoleUpdate:
    """Invite refused as already a member; the account's role was set instead."""
    action: SyncAction
    original: SyncAction


@dataclass(frozen=True)
class Failed:
    action: SyncAction


@dataclass(frozen=True)
class Skipped:
    """Not attempted (dry run or skip action)."""
    action: SyncAction


ActionOutcome = Union[Invited, Applied, UpgradedToRoleUpdate, Failed, Skipped]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _failed(action: SyncAction, error: str, **changes) -> Failed:
    return Failed(replace(action, executed=False, error=error, **changes))


def _applied(action: SyncAction, **changes) -> SyncAction:
    return replace(action, executed=True, error=None, executed_at=_now(), **changes)


def execute_actions(client, org: str, actions: List[SyncAction], dry_run: bool,
                    cancel_event: Optional[threading.Event] = None) -> List[ActionOutcome]:
    """
    Execute actions against the organization.

    Args:
        client: GitHub organization client
        org: Organization login
        actions: Planned actions, in order
        dry_run: When True no API call is made and every action is skipped
        cancel_event: Checked before each action

    Returns:
        One outcome per action, in input order

    Raises:
        SyncCancelledError: If ``cancel_event`` is set between actions
    """
    outcomes = []
    for action in actions:
        if dry_run:
            logger.info(f"[DRY RUN] Would execute: {action}")
            outcomes.append(Skipped(replace(action, executed=False, error=None)))
            continue

        raise_if_cancelled(cancel_event, f"execution of {action.type.value} {action.target_identifier}")
        outcome = _execute_one(client, org, action)

        if isinstance(outcome, Failed):
            logger.error(f"Action failed: {action}: {outcome.action.error}")
        elif not isinstance(outcome, Skipped):
            logger.info(f"Executed: {outcome.action}")
        outcomes.append(outcome)

    return outcomes


def _execute_one(client, org: str, action: SyncAction) -> ActionOutcome:
    if action.type == ActionType.INVITE:
        return _invite(client, org, action)

    if action.type == ActionType.REMOVE:
        try:
            client.remove_member(org, action.target_identifier)
        except TargetAPIError as e:
            return _failed(action, str(e))
        return Applied(_applied(action))

    if action.type == ActionType.UPDATE_ROLE:
        if action.desired_role is None:
            return _failed(action, 'desired role is required')
        try:
            client.update_member_role(org, action.target_identifier, action.desired_role)
        except TargetAPIError as e:
            return _failed(action, str(e))
        return Applied(_applied(action))

    if action.type == ActionType.CANCEL_INVITE:
        if action.invitation_id is None:
            return _failed(action, 'invitation id is required for cancel')
        try:
            client.cancel_invitation(org, action.invitation_id)
        except TargetAPIError as e:
            return _failed(action, str(e))
        return Applied(_applied(action))

    return Skipped(action)


def _invite(client, org: str, action: SyncAction) -> ActionOutcome:
    if action.desired_role is None:
        return _failed(action, 'desired role is required')

    email = action.target_identifier
    try:
        invitation = client.create_invitation(org, email, action.desired_role)
    except AlreadyMemberError as e:
        return _upgrade_existing_member(client, org, action, e)
    except TargetAPIError as e:
        return _failed(action, str(e))

    return Invited(_applied(action, invitation_id=invitation.invitation_id))


def _upgrade_existing_member(client, org: str, action: SyncAction,
                             conflict: AlreadyMemberError) -> ActionOutcome:
    """Turn a refused invite into a role update on the account owning the email."""
    email = action.target_identifier
    logger.info(f"{email} is already a member of {org}, looking up the account")

    try:
        login = client.search_user_by_email(email)
    except TargetAPIError as e:
        logger.warning(f"Account search failed for {email}: {e}")
        return _failed(action, f"{conflict}; account search failed: {e}", already_present=True)

    if not login:
        return _failed(action, f"{conflict}; no unique account found for {email}",
                       already_present=True)

    try:
        client.update_member_role(org, login, action.desired_role)
    except TargetAPIError as e:
        logger.warning(f"Role update for already-present {login} ({email}) failed: {e}")
        return _failed(action, str(e), already_present=True, resolved_account=login)

    upgraded = _applied(
        action,
        type=ActionType.UPDATE_ROLE,
        target_identifier=login,
        source_email=email,
        resolved_account=login,
        already_present=True,
        reason='invite upgraded: already in organization, role updated',
    )
    logger.info(f"Invite for {email} upgraded to role update on {login}")
    return UpgradedToRoleUpdate(action=upgraded, original=action)
