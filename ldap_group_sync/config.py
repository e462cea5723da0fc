"""
Configuration loading and management for LDAP Group Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from ldap_group_sync.models import GroupSearchType

logger = logging.getLogger(__name__)

GROUP_MODES = ('import', 'synchronize')
ORDERS = ('ASC', 'DESC')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'store.user_token': 'GLPI_USER_TOKEN',
        'store.app_token': 'GLPI_APP_TOKEN',
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

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate configuration, reporting every problem at once."""
        errors = []

        ldap_config = self.config['ldap']
        for field in ('server_url', 'base_dn'):
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        if bool(ldap_config.get('bind_dn')) != bool(ldap_config.get('bind_password')):
            errors.append("LDAP bind_dn and bind_password must be set together")

        try:
            search_type = GroupSearchType.from_config(ldap_config['group_search_type'])
        except ValueError as e:
            errors.append(str(e))
        else:
            if search_type != GroupSearchType.GROUPS and not ldap_config.get('group_field'):
                errors.append("LDAP group_field is required when searching groups in users")

        groups_config = self.config['groups']
        if groups_config['mode'] not in GROUP_MODES:
            errors.append(f"Invalid groups.mode '{groups_config['mode']}', expected one of {', '.join(GROUP_MODES)}")
        if str(groups_config['order']).upper() not in ORDERS:
            errors.append(f"Invalid groups.order '{groups_config['order']}', expected ASC or DESC")
        if not isinstance(groups_config['entities_id'], int):
            errors.append("groups.entities_id must be an integer")

        store_config = self.config.get('store', {})
        if not store_config.get('module'):
            errors.append("Missing required store field: module")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'base_dn': '',
            'group_search_type': 'groups',
            'group_condition': '(objectClass=groupOfNames)',
            'condition': '(objectClass=person)',
            'group_field': None,
            'sync_field_group': None,
            'page_size': 1000,
            'size_limit': 0,
        }
        self._merge_defaults('ldap', ldap_defaults)

        groups_defaults = {
            'mode': 'import',
            'entities_id': 0,
            'is_recursive': True,
            'filter': '',
            'filter2': '',
            'order': 'DESC',
        }
        self._merge_defaults('groups', groups_defaults)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        self._merge_defaults('logging', logging_defaults)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'max_errors': 10
        }
        self._merge_defaults('error_handling', error_defaults)

        self.config.setdefault('store', {})

        # LDAP client reads retry settings from its own section
        self.config['ldap'].setdefault('error_handling', self.config['error_handling'])

    def _merge_defaults(self, section: str, defaults: Dict[str, Any]):
        section_config = self.config.get(section)
        if not isinstance(section_config, dict):
            section_config = self.config[section] = {}
        for key, value in defaults.items():
            section_config.setdefault(key, value)


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
