"""
GitHub organization client.

Implements the target directory operations against the GitHub REST API
(v3) and, for verified domain emails, the GraphQL API (v4). Works against
github.com and GitHub Enterprise Server (``base_url`` ending in ``/api/v3``).
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ldap_org_sync.models import AuditEvent, OrgRole, TargetMember
from ldap_org_sync.targets.base import (
    AlreadyMemberError,
    TargetAPIBase,
    TargetAPIError,
)

logger = logging.getLogger(__name__)

API_VERSION = '2022-11-28'
PER_PAGE = 100

VERIFIED_EMAILS_QUERY = """
query($org: String!, $cursor: String) {
  organization(login: $org) {
    membersWithRole(first: 100, after: $cursor) {
      pageInfo {
        hasNextPage
        endCursor
      }
      nodes {
        login
        organizationVerifiedDomainEmails(login: $org)
      }
    }
  }
}
"""


def _require(**values):
    for name, value in values.items():
        if not value:
            raise ValueError(f"{name} is required")


class GitHubOrgAPI(TargetAPIBase):
    """GitHub organization membership, invitations, audit log and verified emails."""

    default_headers = {
        'Accept': 'application/vnd.github+json',
        'X-GitHub-Api-Version': API_VERSION,
        'User-Agent': 'ldap-org-sync',
    }

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        config = dict(config)
        config.setdefault('name', 'GitHub')
        config.setdefault('base_url', 'https://api.github.com')
        super().__init__(config, error_handling)
        self.enrich_public_emails = config.get('enrich_public_emails', True)

    @property
    def graphql_url(self) -> str:
        path = self.base_path + '/graphql'
        if self.base_path.endswith('/v3'):
            path = self.base_path[:-len('/v3')] + '/graphql'
        return f"{self.parsed_url.scheme}://{self.host}{path}"

    # Connectivity

    def get_authenticated_user(self) -> Dict[str, Any]:
        return self.call('GET', '/user').data or {}

    def test_connection(self) -> Tuple[bool, str]:
        try:
            user = self.get_authenticated_user()
            login = user.get('login', 'unknown')
            logger.info(f"GitHub token authenticated as {login}")
            return True, f"authenticated as {login}"
        except TargetAPIError as e:
            logger.error(f"GitHub connection test failed: {e}")
            return False, str(e)

    # Members

    def list_members(self, org: str) -> List[TargetMember]:
        """
        List organization members with their roles.

        Admins are listed first to build the owner set, then every member is
        listed and tagged. Members without an email are enriched from their
        public profile when it exposes one.
        """
        _require(org=org)

        admins = {
            user.get('login')
            for user in self.paginate(f"/orgs/{org}/members", {'role': 'admin', 'per_page': PER_PAGE})
        }

        members = []
        for user in self.paginate(f"/orgs/{org}/members", {'role': 'all', 'per_page': PER_PAGE}):
            login = user.get('login')
            members.append(TargetMember(
                account_handle=login,
                email=user.get('email') or None,
                role=OrgRole.OWNER if login in admins else OrgRole.MEMBER,
            ))

        if self.enrich_public_emails:
            for member in members:
                if not member.email and member.account_handle:
                    member.email = self._get_public_email(member.account_handle)

        logger.debug(f"Listed {len(members)} members of {org} ({len(admins)} admins)")
        return members

    def _get_public_email(self, login: str) -> Optional[str]:
        try:
            profile = self.call('GET', f"/users/{login}").data or {}
        except TargetAPIError as e:
            logger.debug(f"Could not read public profile of {login}: {e}")
            return None
        return profile.get('email') or None

    def remove_member(self, org: str, login: str):
        _require(org=org, login=login)
        self.call('DELETE', f"/orgs/{org}/members/{login}")

    def update_member_role(self, org: str, login: str, role: OrgRole):
        _require(org=org, login=login)
        self.call('PUT', f"/orgs/{org}/memberships/{login}", body={'role': OrgRole(role).value})

    # Invitations

    def list_pending_invitations(self, org: str) -> List[TargetMember]:
        _require(org=org)
        invitations = []
        for invite in self.paginate(f"/orgs/{org}/invitations", {'per_page': PER_PAGE}):
            invitations.append(TargetMember(
                account_handle=invite.get('login') or None,
                email=invite.get('email') or None,
                role=OrgRole.OWNER if invite.get('role') == 'admin' else OrgRole.MEMBER,
                is_pending=True,
                invitation_id=invite.get('id'),
            ))
        return invitations

    def create_invitation(self, org: str, email: str, role: OrgRole) -> TargetMember:
        """
        Invite an email address to the organization.

        Raises:
            AlreadyMemberError: If GitHub answers 422 because the address
                belongs to an existing member
            TargetAPIError: On any other failure
        """
        _require(org=org, email=email)
        role_value = 'admin' if role == OrgRole.OWNER else 'direct_member'

        try:
            response = self.call('POST', f"/orgs/{org}/invitations",
                                 body={'email': email, 'role': role_value})
        except TargetAPIError as e:
            if e.status_code == 422 and 'already' in str(e).lower():
                raise AlreadyMemberError(email, e.status_code, e.response_body)
            logger.debug(f"create_invitation failed for {email} in {org} (role {role_value}): {e}")
            raise

        data = response.data or {}
        return TargetMember(
            email=email,
            role=role,
            is_pending=True,
            invitation_id=data.get('id'),
        )

    def cancel_invitation(self, org: str, invitation_id: int):
        _require(org=org, invitation_id=invitation_id)
        response = self.call('DELETE', f"/orgs/{org}/invitations/{invitation_id}")
        if response.status != 204:
            raise TargetAPIError(f"Cancel invitation returned status {response.status}",
                                 response.status)
        logger.info(f"Cancelled pending invitation {invitation_id} in {org}")

    def list_failed_invitations(self, org: str) -> List[TargetMember]:
        _require(org=org)
        return [
            TargetMember(
                account_handle=invite.get('login') or None,
                email=invite.get('email') or None,
                invitation_id=invite.get('id'),
            )
            for invite in self.paginate(f"/orgs/{org}/failed_invitations", {'per_page': PER_PAGE})
        ]

    # Identity lookups

    def search_user_by_email(self, email: str) -> Optional[str]:
        """
        Find the GitHub login that publicly owns an email address.

        Returns:
            The login when exactly one user matches, otherwise None
        """
        if not email:
            return None

        data = self.call('GET', '/search/users', params={'q': f"{email} in:email"}).data or {}
        total = data.get('total_count', 0)
        items = data.get('items') or []

        if total == 1 and len(items) == 1:
            return items[0].get('login')
        if total > 1:
            logger.warning(f"Multiple GitHub users ({total}) found for {email}, skipping")
        return None

    def list_add_member_audit_events(self, org: str, after_ms: int = 0) -> List[AuditEvent]:
        """
        Read ``org.add_member`` audit log events newer than ``after_ms``.

        Requires GitHub Enterprise Cloud and the ``read:audit_log`` scope.
        """
        _require(org=org)
        events = []
        params = {'phrase': 'action:org.add_member', 'per_page': PER_PAGE, 'order': 'asc'}
        for raw in self.paginate(f"/orgs/{org}/audit-log", params):
            timestamp = int(raw.get('@timestamp') or 0)
            if timestamp <= after_ms:
                continue

            data = raw.get('data') or {}
            invitation_id = data.get('invitation_id')
            if invitation_id is None:
                invitation_id = raw.get('invitation_id')

            events.append(AuditEvent(
                timestamp_ms=timestamp,
                action=raw.get('action', ''),
                actor=raw.get('actor', ''),
                account_handle=raw.get('user', ''),
                invitation_id=invitation_id,
            ))
        return events

    def list_verified_domain_emails(self, org: str) -> Dict[str, str]:
        """
        Map verified domain emails of every member to their login.

        Returns:
            Dictionary of lowercase email to login
        """
        _require(org=org)
        mapping = {}
        cursor = None

        while True:
            variables = {'org': org}
            if cursor:
                variables['cursor'] = cursor

            response = self.call('POST', self.graphql_url,
                                 body={'query': VERIFIED_EMAILS_QUERY, 'variables': variables})
            payload = response.data or {}
            if payload.get('errors'):
                raise TargetAPIError(f"GraphQL errors: {payload['errors'][0].get('message')}",
                                     response.status)

            members = (((payload.get('data') or {}).get('organization') or {})
                       .get('membersWithRole') or {})
            for node in members.get('nodes') or []:
                login = (node or {}).get('login')
                if not login:
                    continue
                for email in node.get('organizationVerifiedDomainEmails') or []:
                    if email:
                        mapping[email.lower()] = login

            page_info = members.get('pageInfo') or {}
            if not page_info.get('hasNextPage') or not page_info.get('endCursor'):
                break
            cursor = page_info['endCursor']

        logger.info(f"Loaded {len(mapping)} verified domain email mappings for {org}")
        return mapping
