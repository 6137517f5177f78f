"""
Data model for LDAP Org Sync.

Records exchanged between the source directory (LDAP), the target directory
(GitHub organization), the diff engine, the action executor and the
invitation store.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

INVITATION_PREFIX = 'INV#'
EXISTING_PREFIX = 'EXISTING#'


class OrgRole(str, Enum):
    """Role of an account in the GitHub organization."""
    MEMBER = 'member'
    OWNER = 'admin'


class ActionType(str, Enum):
    INVITE = 'invite'
    REMOVE = 'remove'
    UPDATE_ROLE = 'update_role'
    CANCEL_INVITE = 'cancel_invite'
    SKIP = 'skip'


class InvitationStatus(str, Enum):
    """Lifecycle state of a persisted invitation record."""
    PENDING = 'pending'
    RESOLVED = 'resolved'
    FAILED = 'failed'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'
    REMOVED = 'removed'


# Allowed status transitions; anything else is rejected by the store.
ALLOWED_TRANSITIONS = {
    InvitationStatus.PENDING: {
        InvitationStatus.RESOLVED,
        InvitationStatus.FAILED,
        InvitationStatus.EXPIRED,
        InvitationStatus.CANCELLED,
    },
    InvitationStatus.RESOLVED: {InvitationStatus.REMOVED},
}


@dataclass
class SourceMember:
    """A member of an LDAP group."""
    email: str
    source_role: str = 'member'
    account_type: str = 'user'
    account_status: str = 'active'
    suspended: bool = False

    @property
    def is_active(self) -> bool:
        return (self.account_type == 'user'
                and self.account_status == 'active'
                and not self.suspended)


@dataclass
class SourceGroups:
    """The two LDAP groups that define desired organization membership."""
    members: List[SourceMember] = field(default_factory=list)
    owners: List[SourceMember] = field(default_factory=list)

    def desired_roles(self) -> Dict[str, Tuple[str, OrgRole]]:
        """
        Build desired state keyed by lowercase email.

        Members are added first and owners are overlaid afterwards, so an
        address in both groups always ends up with the owner role.

        Returns:
            Mapping of lowercase email to (original email, role)
        """
        desired = {}
        for member in self.members:
            if member.email and member.is_active:
                desired[member.email.lower()] = (member.email, OrgRole.MEMBER)
        for owner in self.owners:
            if owner.email and owner.is_active:
                desired[owner.email.lower()] = (owner.email, OrgRole.OWNER)
        return desired

    def all_members(self) -> List[SourceMember]:
        return list(self.members) + list(self.owners)


@dataclass
class TargetMember:
    """A current member or pending invitee of the GitHub organization."""
    account_handle: Optional[str] = None
    email: Optional[str] = None
    role: OrgRole = OrgRole.MEMBER
    is_pending: bool = False
    invitation_id: Optional[int] = None

    @property
    def identifier(self) -> str:
        """Prefer email, fall back to the GitHub login."""
        if self.email:
            return self.email
        if self.account_handle:
            return self.account_handle
        return ''


@dataclass(frozen=True)
class SyncAction:
    """
    A single corrective operation against the organization.

    ``target_identifier`` is an email for invite / cancel actions and a
    GitHub login for remove / role update actions. Instances are immutable;
    the executor derives new ones to record results.
    """
    type: ActionType
    target_identifier: str
    reason: str = ''
    source_email: Optional[str] = None
    resolved_account: Optional[str] = None
    current_role: Optional[OrgRole] = None
    desired_role: Optional[OrgRole] = None
    executed: bool = False
    already_present: bool = False
    error: Optional[str] = None
    executed_at: Optional[datetime] = None
    invitation_id: Optional[int] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        for key in ('type', 'current_role', 'desired_role'):
            if data[key] is not None:
                data[key] = data[key].value
        if self.executed_at:
            data['executed_at'] = self.executed_at.isoformat()
        return data

    def __str__(self):
        role = f" role={self.desired_role.value}" if self.desired_role else ''
        return f"{self.type.value} {self.target_identifier}{role} ({self.reason})"


def invitation_key(invitation_id: int) -> str:
    return f"{INVITATION_PREFIX}{invitation_id}"


def existing_key(account_handle: str) -> str:
    return f"{EXISTING_PREFIX}{account_handle}"


@dataclass
class InvitationRecord:
    """A persisted email -> GitHub login mapping, keyed by (org, record_key)."""
    org: str
    record_key: str
    email: str
    status: InvitationStatus
    role: OrgRole
    invited_at: datetime
    ttl: int
    account_handle: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def invitation_id(self) -> Optional[int]:
        """Invitation id parsed from an ``INV#`` key, None for other keys."""
        if not self.record_key.startswith(INVITATION_PREFIX):
            return None
        try:
            return int(self.record_key[len(INVITATION_PREFIX):])
        except ValueError:
            return None


@dataclass
class AuditEvent:
    """An ``org.add_member`` entry from the organization audit log."""
    timestamp_ms: int
    action: str = 'org.add_member'
    actor: str = ''
    account_handle: str = ''
    invitation_id: Optional[int] = None


@dataclass
class MappingHints:
    """Email correlations read from the invitation store before the diff."""
    resolved: Dict[str, str] = field(default_factory=dict)
    pending_invitations: Dict[str, int] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    """Counters for one reconciliation pass (or one phase of it)."""
    new_saved: int = 0
    resolved: int = 0
    failed: int = 0
    expired: int = 0
    cancelled: int = 0
    members_removed: int = 0
    roles_updated: int = 0
    already_present_resolved: int = 0
    verified_emails_mapped: int = 0
    errors: List[str] = field(default_factory=list)

    @classmethod
    def merge(cls, *results: 'ReconcileResult') -> 'ReconcileResult':
        merged = cls()
        for result in results:
            merged.new_saved += result.new_saved
            merged.resolved += result.resolved
            merged.failed += result.failed
            merged.expired += result.expired
            merged.cancelled += result.cancelled
            merged.members_removed += result.members_removed
            merged.roles_updated += result.roles_updated
            merged.already_present_resolved += result.already_present_resolved
            merged.verified_emails_mapped += result.verified_emails_mapped
            merged.errors.extend(result.errors)
        return merged

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class SyncSummary:
    total_source_members: int = 0
    total_target_members: int = 0
    pending_invitations: int = 0
    actions_planned: int = 0
    actions_executed: int = 0
    actions_failed: int = 0
    invited: int = 0
    already_present: int = 0
    removed: int = 0
    role_updated: int = 0
    cancelled_invites: int = 0
    skipped: int = 0
    orphaned: int = 0

    def __str__(self):
        return (
            f"LDAP: {self.total_source_members} members, "
            f"GitHub: {self.total_target_members} members, "
            f"pending invites: {self.pending_invitations}, "
            f"actions: {self.actions_planned} planned / {self.actions_executed} executed / "
            f"{self.actions_failed} failed, invited: {self.invited}, "
            f"already present: {self.already_present}, removed: {self.removed}, "
            f"role updated: {self.role_updated}, cancelled: {self.cancelled_invites}, "
            f"skipped: {self.skipped}, orphaned: {self.orphaned}"
        )


@dataclass
class SyncResult:
    """Outcome of one sync run. Dry runs and live runs share this shape."""
    dry_run: bool
    start_time: datetime
    end_time: datetime
    actions: List[SyncAction] = field(default_factory=list)
    summary: SyncSummary = field(default_factory=SyncSummary)
    invited_users: List[str] = field(default_factory=list)
    already_present_users: List[str] = field(default_factory=list)
    orphaned_members: List[str] = field(default_factory=list)
    reconciliation: Optional[ReconcileResult] = None
    errors: List[str] = field(default_factory=list)

    @property
    def duration_ms(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    @property
    def is_success(self) -> bool:
        if self.errors or self.summary.actions_failed:
            return False
        if self.reconciliation and self.reconciliation.errors:
            return False
        return True

    def to_dict(self) -> Dict:
        return {
            'dry_run': self.dry_run,
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat(),
            'duration_ms': self.duration_ms,
            'actions': [action.to_dict() for action in self.actions],
            'summary': asdict(self.summary),
            'invited_users': list(self.invited_users),
            'already_present_users': list(self.already_present_users),
            'orphaned_members': list(self.orphaned_members),
            'reconciliation': self.reconciliation.to_dict() if self.reconciliation else None,
            'errors': list(self.errors),
        }
