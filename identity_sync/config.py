"""
Configuration loading and management for Identity Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'database.url': 'DATABASE_URL',
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

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

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
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        database_config = self.config.get('database') or {}
        if not database_config.get('url'):
            errors.append("Missing required database field: url")

        reconciliation = self.config.get('reconciliation') or {}
        positive_ints = {
            'interval_seconds': 'reconciliation.interval_seconds',
            'max_workers': 'reconciliation.max_workers',
        }
        for key, label in positive_ints.items():
            value = reconciliation.get(key)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 1):
                errors.append(f"{label} must be a positive integer")

        timeout = reconciliation.get('fetch_timeout_seconds')
        if timeout is not None and (not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0):
            errors.append("reconciliation.fetch_timeout_seconds must be a positive number")

        grace = reconciliation.get('missing_grace_cycles')
        if grace is not None and (not isinstance(grace, int) or isinstance(grace, bool) or grace < 0):
            errors.append("reconciliation.missing_grace_cycles must be a non-negative integer")

        error_handling = self.config.get('error_handling') or {}
        for key, minimum in (('retry_wait_seconds', 0), ('backoff_multiplier', 1)):
            value = error_handling.get(key)
            if value is not None and (not isinstance(value, (int, float)) or isinstance(value, bool) or value < minimum):
                errors.append(f"error_handling.{key} must be a number of at least {minimum}")

        ownership = reconciliation.get('field_ownership')
        if ownership is not None:
            if not isinstance(ownership, dict):
                errors.append("reconciliation.field_ownership must be a mapping")
            else:
                for key in ('authoritative', 'protected'):
                    names = ownership.get(key)
                    if names is not None and (not isinstance(names, list)
                                              or not all(isinstance(n, str) for n in names)):
                        errors.append(f"reconciliation.field_ownership.{key} must be a list of field names")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        defaults = {
            'ldap': {
                'user_base_dn': '',
                'user_filter': '(objectClass=posixAccount)',
                'default_login_shell': '/bin/bash',
                'page_size': 1000,
            },
            'database': {
                'pool_size': 5,
                'max_overflow': 0,
                'echo': False,
            },
            'reconciliation': {
                'interval_seconds': 300,
                'max_workers': 4,
                'fetch_timeout_seconds': 60,
                'missing_grace_cycles': 0,
                'seed_protected_on_create': False,
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7,
            },
            'error_handling': {
                'max_retries': 3,
                'retry_wait_seconds': 5,
                'backoff_multiplier': 1.0,
            },
            'notifications': {
                'enable_email': False,
                'email_on_failure': True,
                'email_on_success': False,
                'smtp_port': 587,
                'smtp_tls': True,
            },
            'audit': {
                'sync_log_retention_days': 30,
            },
        }

        for section, section_defaults in defaults.items():
            section_config = self.config.get(section)
            if not isinstance(section_config, dict):
                section_config = {}
                self.config[section] = section_config
            for key, value in section_defaults.items():
                section_config.setdefault(key, value)

        # The LDAP client reads retry settings from its own section
        self.config['ldap'].setdefault('error_handling', dict(self.config['error_handling']))


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
