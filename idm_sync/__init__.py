"""
IDM Sync - Reconcile identity directory groups with GitLab and Mattermost.

This package reads groups from a central identity directory (Keycloak or LDAP),
decodes organization units and permissions from the group names and converges
users, teams, groups and memberships in the downstream applications.
"""

__version__ = "1.0.0"
__author__ = "IDM Sync Team"
