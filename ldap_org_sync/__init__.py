"""
LDAP Org Sync - Mirror LDAP group membership into a GitHub organization.

Two LDAP groups (members and owners) define who belongs to the organization
and with which role. Each run computes the corrective actions, applies them
through the GitHub API and tracks invitations until the invited address can
be tied to a GitHub login.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
