"""
Read-only reports on the directory view of each application.

Reports decode the directory groups the same way a reconciliation pass does,
but never touch the downstream application. Statistics come from the
application itself.
"""

import io
import csv
import json
import logging
from typing import Dict, List, Any, Optional

from idm_sync.apps.base import ApplicationConnector
from idm_sync.directory.base import IdentityDirectory
from idm_sync.models import OrganizationStatistics

logger = logging.getLogger(__name__)


def _permission_name(permission) -> str:
    return getattr(permission, 'name', str(permission))


def list_applications(connectors: List[ApplicationConnector]) -> List[Dict[str, str]]:
    return [{'id': connector.id, 'name': connector.display_name} for connector in connectors]


def _decoded_groups(directory: IdentityDirectory, connector: ApplicationConnector):
    groups = directory.get_groups(connector.group_search_filter())
    if groups is None:
        logger.error(f"Could not retrieve directory groups for {connector.display_name}")
        return None

    decoded = []
    for group in groups:
        role = connector.decode_group(group)
        if role is not None:
            decoded.append((group, role))
    return decoded


def list_organizations(directory: IdentityDirectory, connector: ApplicationConnector,
                       search: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
    """
    List the organization units the directory groups describe.

    Args:
        directory: Authenticated identity directory
        connector: Application whose group pattern is used
        search: Optional case-insensitive substring of the unit name

    Returns:
        Units sorted by name, each with its sorted role names, or None if the
        directory could not be queried
    """
    decoded = _decoded_groups(directory, connector)
    if decoded is None:
        return None

    units = {}
    for _, role in decoded:
        units.setdefault(role.unit_name, set()).add(role.permission)

    if search:
        needle = search.lower()
        units = {name: roles for name, roles in units.items() if needle in name.lower()}

    return [
        {'name': name, 'roles': [_permission_name(role) for role in sorted(units[name])]}
        for name in sorted(units)
    ]


def list_organization_members(directory: IdentityDirectory, connector: ApplicationConnector,
                              organization: str) -> Optional[List[Dict[str, Any]]]:
    """
    List the directory members of one organization unit with their highest role.

    Returns:
        Members sorted by username, or None if the directory could not be queried
    """
    decoded = _decoded_groups(directory, connector)
    if decoded is None:
        return None

    members = {}
    for group, role in decoded:
        if role.unit_name != organization:
            continue
        users = directory.get_group_members(group)
        if users is None:
            logger.error(f"Could not retrieve members of directory group '{group.name}'")
            return None
        for user in users:
            current = members.get(user.username)
            if current is None or role.permission > current[1]:
                members[user.username] = (user, role.permission)

    return [
        {
            'username': username,
            'name': user.name,
            'email': user.email,
            'role': _permission_name(permission),
        }
        for username, (user, permission) in sorted(members.items())
    ]


def list_users(directory: IdentityDirectory, connector: ApplicationConnector,
               search: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
    """
    List the distinct directory users of an application with their units.

    Args:
        directory: Authenticated identity directory
        connector: Application whose group pattern is used
        search: Optional case-insensitive substring of username, name or email

    Returns:
        Users sorted by username, or None if the directory could not be queried
    """
    decoded = _decoded_groups(directory, connector)
    if decoded is None:
        return None

    users = {}
    organizations = {}
    for group, role in decoded:
        members = directory.get_group_members(group)
        if members is None:
            logger.error(f"Could not retrieve members of directory group '{group.name}'")
            return None
        for user in members:
            users.setdefault(user.username, user)
            organizations.setdefault(user.username, set()).add(role.unit_name)

    result = []
    for username in sorted(users):
        user = users[username]
        if search:
            needle = search.lower()
            haystack = [user.username, user.name, user.email or '']
            if not any(needle in value.lower() for value in haystack):
                continue
        result.append({
            'username': username,
            'name': user.name,
            'email': user.email,
            'organizations': sorted(organizations[username]),
        })
    return result


def statistics_to_json(statistics: List[OrganizationStatistics]) -> str:
    return json.dumps([item.to_dict() for item in statistics], indent=2)


def statistics_to_csv(statistics: List[OrganizationStatistics]) -> str:
    """
    Render statistics as CSV.

    The first column is the organization name, followed by one column per
    statistic key in the order the keys are first seen.
    """
    columns = []
    for item in statistics:
        for key in item.statistics:
            if key not in columns:
                columns.append(key)

    output = io.StringIO()
    writer = csv.writer(output, lineterminator='\n')
    writer.writerow(['organization'] + columns)
    for item in statistics:
        writer.writerow([item.name] + [item.statistics.get(key, '') for key in columns])
    return output.getvalue()


def rows_to_csv(rows: List[Dict[str, Any]]) -> str:
    """Render report rows as CSV, joining list values with ';'."""
    if not rows:
        return ''
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=list(rows[0]), lineterminator='\n')
    writer.writeheader()
    for row in rows:
        writer.writerow({
            key: ';'.join(str(item) for item in value) if isinstance(value, list) else value
            for key, value in row.items()
        })
    return output.getvalue()
