"""
Identity directories.

The directory implementation is selected by ``directory.type``.
"""

from typing import Dict, Any, Optional

from idm_sync.config import ConfigurationError
from idm_sync.directory.base import DirectoryError, IdentityDirectory
from idm_sync.directory.keycloak import KeycloakDirectory
from idm_sync.directory.ldap import LdapDirectory


def create_directory(config: Dict[str, Any],
                     error_handling: Optional[Dict[str, Any]] = None) -> IdentityDirectory:
    """
    Create the identity directory for a directory configuration.

    Raises:
        ConfigurationError: If the directory type is unknown
    """
    directory_type = config.get('type')
    if directory_type == 'keycloak':
        return KeycloakDirectory(config)
    if directory_type == 'ldap':
        return LdapDirectory(config, error_handling)
    raise ConfigurationError(f"Unknown directory type: {directory_type!r}")


__all__ = ['DirectoryError', 'IdentityDirectory', 'KeycloakDirectory', 'LdapDirectory', 'create_directory']
