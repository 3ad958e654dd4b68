"""
Application connectors.

Connectors are selected by the ``kind`` of an application configuration.
The set of kinds is fixed; there is no loading of connector classes by name.
"""

from typing import Dict, Any

from idm_sync.apps.base import ApplicationConnector
from idm_sync.apps.gitlab import GitLabConnector
from idm_sync.apps.mattermost import MattermostConnector
from idm_sync.config import ConfigurationError

APPLICATION_KINDS = {
    'gitlab': GitLabConnector,
    'mattermost': MattermostConnector,
}


def create_connector(app_config: Dict[str, Any], strict_group_names: bool = False) -> ApplicationConnector:
    """
    Create the connector for an application configuration.

    Args:
        app_config: Application configuration dictionary
        strict_group_names: Abort the pass on undecodable group names

    Returns:
        Connector instance

    Raises:
        ConfigurationError: If the kind is unknown
    """
    kind = app_config.get('kind')
    connector_class = APPLICATION_KINDS.get(kind)
    if connector_class is None:
        raise ConfigurationError(f"Unknown application kind: {kind!r}")
    return connector_class(app_config, strict_group_names=strict_group_names)


__all__ = ['ApplicationConnector', 'APPLICATION_KINDS', 'create_connector',
           'GitLabConnector', 'MattermostConnector']
