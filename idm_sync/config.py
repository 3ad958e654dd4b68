"""
Configuration loading and management for IDM Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import re
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


DIRECTORY_TYPES = ('keycloak', 'ldap')

# Defaults per application kind. The kind itself is validated against this table.
APPLICATION_DEFAULTS = {
    'gitlab': {
        'unit_capture': 'groupPath',
        'permission_capture': 'permission',
        'excluded_users': 'root,ghost',
        'user_id_attribute': 'GITLAB_USER_ID',
        'remove_sub_resource_members': False,
    },
    'mattermost': {
        'unit_capture': 'teamName',
        'admin_capture': 'teamAdmin',
        'excluded_users': 'root,ghost',
        'user_id_attribute': 'MATTERMOST_USER_ID',
        'remove_sub_resource_members': False,
    },
}

_JAVA_NAMED_GROUP = re.compile(r'\(\?<(?![=!])')


def normalize_pattern(pattern: str) -> str:
    """Convert Java-style named groups ``(?<name>...)`` to Python's ``(?P<name>...)``."""
    return _JAVA_NAMED_GROUP.sub('(?P<', pattern)


def parse_excluded_users(value) -> List[str]:
    """Split a comma-separated username list. Lists are accepted as well."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(',')
    return [name.strip() for name in value if name and name.strip()]


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.client_secret': 'DIRECTORY_CLIENT_SECRET',
        'directory.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        return self.process()

    def process(self) -> Dict[str, Any]:
        """Apply overrides, validation and defaults to the already parsed configuration."""
        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        # Application tokens, e.g. GITLAB_TOKEN
        for app in self.config.get('apps', None) or []:
            if not isinstance(app, dict) or not app.get('kind'):
                continue
            env_var = f"{str(app['kind']).upper()}_TOKEN"
            env_value = os.getenv(env_var)
            if env_value:
                app['token'] = env_value
                logger.debug(f"Applied environment override for {app['kind']} token")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # Validate directory configuration
        directory = self.config.get('directory') or {}
        directory_type = directory.get('type')
        if directory_type not in DIRECTORY_TYPES:
            errors.append(f"directory.type must be one of {', '.join(DIRECTORY_TYPES)}")
        elif directory_type == 'keycloak':
            for field in ['server_url', 'realm', 'client_id', 'client_secret']:
                if not directory.get(field):
                    errors.append(f"Missing required Keycloak field: directory.{field}")
        else:
            for field in ['server_url', 'bind_dn', 'bind_password', 'group_base_dn']:
                if not directory.get(field):
                    errors.append(f"Missing required LDAP field: directory.{field}")

        # Validate applications
        apps = self.config.get('apps') or []
        if not apps:
            errors.append("At least one application must be configured")

        seen_kinds = set()
        for i, app in enumerate(apps):
            app_prefix = f"apps[{i}]"
            if not isinstance(app, dict):
                errors.append(f"{app_prefix} must be a mapping")
                continue

            kind = app.get('kind')
            if kind not in APPLICATION_DEFAULTS:
                errors.append(f"Unknown application kind for {app_prefix}: {kind!r} "
                              f"(known kinds: {', '.join(APPLICATION_DEFAULTS)})")
                continue
            if kind in seen_kinds:
                errors.append(f"Application kind '{kind}' configured more than once")
            seen_kinds.add(kind)

            for field in ['server_url', 'token', 'group_search', 'group_pattern']:
                if not app.get(field):
                    errors.append(f"Missing required field {app_prefix}.{field}")

            pattern = app.get('group_pattern')
            if pattern:
                errors.extend(self._validate_pattern(app_prefix, kind, app, pattern))

            if app.get('provider_name') and not app.get('provider_uid_attribute'):
                errors.append(f"{app_prefix}.provider_name requires provider_uid_attribute")

            if app.get('global_team') and kind != 'mattermost':
                errors.append(f"{app_prefix}.global_team is only supported by mattermost")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_pattern(self, app_prefix: str, kind: str, app: Dict[str, Any], pattern: str) -> List[str]:
        """Check that a group pattern compiles and provides the captures the connector needs."""
        try:
            regex = re.compile(normalize_pattern(pattern))
        except re.error as e:
            return [f"Invalid {app_prefix}.group_pattern: {e}"]

        defaults = APPLICATION_DEFAULTS[kind]
        required = [app.get('unit_capture', defaults['unit_capture'])]
        if 'permission_capture' in defaults:
            required.append(app.get('permission_capture', defaults['permission_capture']))

        return [f"{app_prefix}.group_pattern lacks named capture '{name}'"
                for name in required if name not in regex.groupindex]

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # Directory defaults
        directory_defaults = {
            'page_size': 100,
            'verify_ssl': True,
            'timeout': 30,
        }
        if self.config['directory'].get('type') == 'ldap':
            directory_defaults.update({
                'user_base_dn': '',
                'group_filter': '(objectClass=groupOfNames)',
                'member_attribute': 'member',
                'username_attribute': 'uid',
                'page_size': 500,
            })
        directory_config = self.config['directory']
        for key, value in directory_defaults.items():
            directory_config.setdefault(key, value)

        # Sync defaults
        sync_defaults = {
            'enabled_apps': ['*'],
            'email_domain': None,
            'strict_group_names': False,
            'clear_required_actions': False,
            'interval_seconds': 0,
        }
        sync_config = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)

        # Application defaults
        for app in self.config.get('apps', []):
            app.setdefault('page_size', 100)
            app.setdefault('retry_wait_seconds', 1)
            app.setdefault('timeout', 30)
            app.setdefault('verify_ssl', True)
            app.setdefault('proxy_host', None)
            app.setdefault('proxy_port', 0)
            app.setdefault('provider_name', None)
            app.setdefault('provider_uid_attribute', None)
            for key, value in APPLICATION_DEFAULTS[app['kind']].items():
                app.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
