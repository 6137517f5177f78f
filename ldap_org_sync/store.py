"""
SQLite-backed invitation store.

Persists email -> GitHub login mappings for the organization so that
invitations sent by this tool can be resolved across runs. Records are keyed
by ``(org, record_key)`` where ``record_key`` is ``INV#<invitation id>`` for
invitations issued by the sync and ``EXISTING#<login>`` for accounts found
already present in the organization. Secondary lookups by email and by
status are served by indexes.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from ldap_org_sync.models import (
    ALLOWED_TRANSITIONS,
    InvitationRecord,
    InvitationStatus,
    OrgRole,
    invitation_key,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS invitation_records (
    org TEXT NOT NULL,
    record_key TEXT NOT NULL,
    email TEXT NOT NULL COLLATE NOCASE,
    account_handle TEXT,
    status TEXT NOT NULL,
    role TEXT NOT NULL,
    invited_at TEXT NOT NULL,
    resolved_at TEXT,
    ttl INTEGER NOT NULL,
    PRIMARY KEY (org, record_key)
);

CREATE INDEX IF NOT EXISTS idx_records_email ON invitation_records(email, org);
CREATE INDEX IF NOT EXISTS idx_records_status ON invitation_records(org, status);

CREATE TABLE IF NOT EXISTS audit_log_cursors (
    org TEXT PRIMARY KEY,
    last_timestamp INTEGER NOT NULL,
    last_run TEXT NOT NULL
);
"""

DEFAULT_TTL_DAYS = 90


class StoreError(Exception):
    """Raised when the invitation store cannot be read or written."""
    pass


class InvalidTransitionError(StoreError):
    """Raised when a status change would move a record backwards."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ttl_from(moment: datetime, ttl_days: int) -> int:
    """Unix timestamp ``ttl_days`` after ``moment``."""
    return int((moment + timedelta(days=ttl_days)).timestamp())


class InvitationStore:
    """Identity mapping store on top of a single SQLite database."""

    def __init__(self, path: str = 'invitations.db', ttl_days: int = DEFAULT_TTL_DAYS):
        """
        Open (and create if needed) the store.

        Args:
            path: Database file, or ``:memory:`` for a throwaway store
            ttl_days: Lifetime of a record after creation or resolution
        """
        self.path = path
        self.ttl_days = ttl_days if ttl_days and ttl_days > 0 else DEFAULT_TTL_DAYS
        try:
            self._conn = sqlite3.connect(path, timeout=30.0, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open invitation store {path}: {e}")

        logger.debug(f"Invitation store opened at {path} (ttl {self.ttl_days} days)")

    def close(self):
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error closing invitation store: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._conn:
                return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreError(f"Invitation store query failed: {e}")

    def _query(self, sql: str, params: tuple = ()) -> List[InvitationRecord]:
        now = int(_utcnow().timestamp())
        rows = self._execute(sql, params).fetchall()
        return [self._row_to_record(row) for row in rows if row['ttl'] > now]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> InvitationRecord:
        return InvitationRecord(
            org=row['org'],
            record_key=row['record_key'],
            email=row['email'],
            account_handle=row['account_handle'],
            status=InvitationStatus(row['status']),
            role=OrgRole(row['role']),
            invited_at=datetime.fromisoformat(row['invited_at']),
            resolved_at=datetime.fromisoformat(row['resolved_at']) if row['resolved_at'] else None,
            ttl=row['ttl'],
        )

    # Record factories

    def new_pending(self, org: str, invitation_id: int, email: str, role: OrgRole,
                    now: Optional[datetime] = None) -> InvitationRecord:
        now = now or _utcnow()
        return InvitationRecord(
            org=org,
            record_key=invitation_key(invitation_id),
            email=email,
            status=InvitationStatus.PENDING,
            role=role,
            invited_at=now,
            ttl=ttl_from(now, self.ttl_days),
        )

    def new_existing(self, org: str, record_key: str, email: str, account_handle: str,
                     role: OrgRole, now: Optional[datetime] = None) -> InvitationRecord:
        now = now or _utcnow()
        return InvitationRecord(
            org=org,
            record_key=record_key,
            email=email,
            account_handle=account_handle,
            status=InvitationStatus.RESOLVED,
            role=role,
            invited_at=now,
            resolved_at=now,
            ttl=ttl_from(now, self.ttl_days),
        )

    # Keyed access

    def save(self, record: InvitationRecord):
        """Insert or replace a record."""
        self._execute(
            "INSERT OR REPLACE INTO invitation_records "
            "(org, record_key, email, account_handle, status, role, invited_at, resolved_at, ttl) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.org,
                record.record_key,
                record.email,
                record.account_handle,
                record.status.value,
                record.role.value,
                record.invited_at.isoformat(),
                record.resolved_at.isoformat() if record.resolved_at else None,
                record.ttl,
            )
        )

    def get(self, org: str, record_key: str) -> Optional[InvitationRecord]:
        records = self._query(
            "SELECT * FROM invitation_records WHERE org = ? AND record_key = ?",
            (org, record_key)
        )
        return records[0] if records else None

    def get_invitation(self, org: str, invitation_id: int) -> Optional[InvitationRecord]:
        return self.get(org, invitation_key(invitation_id))

    # Secondary lookups

    def query_by_email(self, org: str, email: str) -> List[InvitationRecord]:
        """All records for an email (case-insensitive)."""
        return self._query(
            "SELECT * FROM invitation_records WHERE email = ? AND org = ? ORDER BY invited_at",
            (email, org)
        )

    def query_by_status(self, org: str, status: InvitationStatus) -> List[InvitationRecord]:
        return self._query(
            "SELECT * FROM invitation_records WHERE org = ? AND status = ? ORDER BY invited_at",
            (org, status.value)
        )

    def find_resolved_by_account(self, org: str, account_handle: str) -> List[InvitationRecord]:
        """Resolved records whose GitHub login matches, ignoring case."""
        handle = account_handle.lower()
        return [
            record for record in self.query_by_status(org, InvitationStatus.RESOLVED)
            if record.account_handle and record.account_handle.lower() == handle
        ]

    def resolved_mappings(self, org: str) -> Dict[str, str]:
        """Resolved email -> login correlations."""
        return {
            record.email: record.account_handle
            for record in self.query_by_status(org, InvitationStatus.RESOLVED)
            if record.account_handle
        }

    def pending_invitation_hints(self, org: str) -> Dict[str, int]:
        """Pending email -> invitation id correlations."""
        hints = {}
        for record in self.query_by_status(org, InvitationStatus.PENDING):
            if record.invitation_id is not None:
                hints[record.email] = record.invitation_id
        return hints

    # Transitions

    def _check_transition(self, record: InvitationRecord, status: InvitationStatus):
        if status not in ALLOWED_TRANSITIONS.get(record.status, set()):
            raise InvalidTransitionError(
                f"Cannot move {record.record_key} from {record.status.value} to {status.value}"
            )

    def resolve(self, org: str, record_key: str, account_handle: str,
                now: Optional[datetime] = None) -> bool:
        """
        Mark a pending record as resolved to a GitHub login.

        The TTL is refreshed from the resolution time.

        Returns:
            True if a record was resolved, False if none exists
        """
        record = self.get(org, record_key)
        if record is None:
            return False
        self._check_transition(record, InvitationStatus.RESOLVED)

        now = now or _utcnow()
        self._execute(
            "UPDATE invitation_records SET account_handle = ?, status = ?, resolved_at = ?, ttl = ? "
            "WHERE org = ? AND record_key = ? AND status = ?",
            (
                account_handle,
                InvitationStatus.RESOLVED.value,
                now.isoformat(),
                ttl_from(now, self.ttl_days),
                org,
                record_key,
                InvitationStatus.PENDING.value,
            )
        )
        return True

    def update_status(self, org: str, record_key: str, status: InvitationStatus) -> bool:
        """
        Move a record to a terminal status.

        Returns:
            True if a record was updated, False if none exists

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        record = self.get(org, record_key)
        if record is None:
            return False
        self._check_transition(record, status)

        self._execute(
            "UPDATE invitation_records SET status = ? WHERE org = ? AND record_key = ?",
            (status.value, org, record_key)
        )
        return True

    def update_role(self, org: str, record_key: str, role: OrgRole) -> bool:
        cursor = self._execute(
            "UPDATE invitation_records SET role = ? WHERE org = ? AND record_key = ?",
            (role.value, org, record_key)
        )
        return cursor.rowcount > 0

    # Audit log cursor

    def get_audit_cursor(self, org: str) -> Optional[int]:
        row = self._execute(
            "SELECT last_timestamp FROM audit_log_cursors WHERE org = ?", (org,)
        ).fetchone()
        return row['last_timestamp'] if row else None

    def save_audit_cursor(self, org: str, last_timestamp: int):
        self._execute(
            "INSERT OR REPLACE INTO audit_log_cursors (org, last_timestamp, last_run) VALUES (?, ?, ?)",
            (org, last_timestamp, _utcnow().isoformat())
        )

    # Maintenance

    def purge_expired(self) -> int:
        """Delete records whose TTL has passed. Returns the number deleted."""
        cursor = self._execute(
            "DELETE FROM invitation_records WHERE ttl <= ?", (int(_utcnow().timestamp()),)
        )
        if cursor.rowcount:
            logger.info(f"Purged {cursor.rowcount} expired invitation records")
        return cursor.rowcount

    def count(self, org: Optional[str] = None) -> int:
        if org:
            row = self._execute(
                "SELECT COUNT(*) AS n FROM invitation_records WHERE org = ?", (org,)
            ).fetchone()
        else:
            row = self._execute("SELECT COUNT(*) AS n FROM invitation_records").fetchone()
        return row['n']
