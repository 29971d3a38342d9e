"""
Configuration loading and management for LDAP Profile Import.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

IDENTITY_TYPES = ('Email', 'CloudId', 'PrincipalName')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


MERGE_TAG = 'tag:yaml.org,2002:merge'
PROPERTY_PAIRS_TAG = 'tag:profile-import,2024:property-pairs'


class UniqueKeyLoader(yaml.SafeLoader):
    """
    SafeLoader that refuses mappings with repeated keys instead of keeping the last one.

    ``mapping.properties`` is the exception: it is loaded as an ordered list of
    (source, destination) pairs with repeats kept, so that the property map
    itself reports a source attribute mapped twice.
    """

    def construct_document(self, node):
        self._mark_property_pairs(node)
        return super().construct_document(node)

    def _mark_property_pairs(self, root):
        for section in self._mapping_values(root, 'mapping'):
            for properties in self._mapping_values(section, 'properties'):
                properties.tag = PROPERTY_PAIRS_TAG

    @staticmethod
    def _mapping_values(node, name):
        if not isinstance(node, yaml.MappingNode):
            return []
        return [value_node for key_node, value_node in node.value
                if isinstance(key_node, yaml.ScalarNode) and key_node.value == name
                and isinstance(value_node, yaml.MappingNode)]

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            # Merge keys ('<<') are resolved by flatten_mapping in the base class
            if key_node.tag == MERGE_TAG:
                continue
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping", node.start_mark,
                    "found unhashable key", key_node.start_mark
                )
            if duplicate:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping", node.start_mark,
                    f"found duplicate key '{key}'", key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _construct_property_pairs(loader, node):
    loader.flatten_mapping(node)
    return loader.construct_pairs(node, deep=True)


UniqueKeyLoader.add_constructor(PROPERTY_PAIRS_TAG, _construct_property_pairs)


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'publisher.auth.client_secret': 'PUBLISHER_CLIENT_SECRET',
        'publisher.auth.password': 'PUBLISHER_PASSWORD',
        'publisher.auth.token': 'PUBLISHER_TOKEN',
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
                self.config = yaml.load(f, Loader=UniqueKeyLoader)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if self.config is None:
            self.config = {}
        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        # Apply environment variable overrides
        self._apply_env_overrides()

        # Apply defaults before validation so optional lists have their final shape
        self._apply_defaults()

        # Validate configuration
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
        """Validate required configuration fields."""
        errors = []

        # Validate LDAP configuration
        ldap_config = self.config.get('ldap', {})
        required_ldap_fields = ['server_url', 'bind_dn', 'bind_password']
        for field in required_ldap_fields:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        # Validate export configuration
        export_config = self.config.get('export', {})
        if not export_config.get('identity_attribute'):
            errors.append("Missing export.identity_attribute")
        if not export_config.get('attributes'):
            errors.append("At least one attribute must be listed in export.attributes")
        for list_field in ('attributes', 'extension_attributes', 'csv_fields'):
            errors.extend(self._validate_name_list(f"export.{list_field}", export_config.get(list_field)))

        exported = [name for key in ('attributes', 'extension_attributes')
                    if isinstance(export_config.get(key), list)
                    for name in export_config[key] if isinstance(name, str)]
        duplicates = sorted({name for name in exported if exported.count(name) > 1})
        if duplicates:
            errors.append(f"Attributes listed more than once in export: {', '.join(duplicates)}")
        if 'idName' in exported:
            errors.append("'idName' is reserved for the identity column and cannot be exported as an attribute")

        # Validate publisher
        publisher = self.config.get('publisher', {})
        required_publisher_fields = ['module', 'base_url', 'library', 'auth']
        for field in required_publisher_fields:
            if not publisher.get(field):
                errors.append(f"Missing required field publisher.{field}")

        auth = publisher.get('auth', {})
        if auth and not auth.get('method'):
            errors.append("Missing auth method for publisher")

        if publisher.get('identity_type') not in IDENTITY_TYPES:
            errors.append(f"publisher.identity_type must be one of {', '.join(IDENTITY_TYPES)}")

        # Validate property mapping
        # properties arrive as (source, destination) pairs when written as a YAML mapping
        mapping_config = self.config.get('mapping', {})
        if not mapping_config.get('properties'):
            errors.append("At least one property mapping must be configured in mapping.properties")
        if mapping_config.get('strictness') not in ('warn', 'fail'):
            errors.append("mapping.strictness must be 'warn' or 'fail'")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_name_list(self, field: str, value: Any) -> List[str]:
        """Check that a configured attribute list holds non-empty strings only."""
        if value is None:
            return []
        if not isinstance(value, list):
            return [f"{field} must be a list"]
        return [f"{field}[{i}] must be a non-empty string"
                for i, name in enumerate(value)
                if not isinstance(name, str) or not name.strip()]

    def _section(self, name: str) -> Dict[str, Any]:
        """Return a top-level section, replacing an empty (null) section with a dict."""
        section = self.config.get(name)
        if section is None:
            section = self.config[name] = {}
        elif not isinstance(section, dict):
            raise ConfigurationError(f"Configuration section '{name}' must be a mapping")
        return section

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # LDAP defaults
        ldap_defaults = {
            'user_base_dn': '',
            'user_filter': '(&(objectClass=person)(objectClass=user))',
            'search_attributes': ['cn', 'displayName', 'givenName', 'sn', 'mail'],
            'page_size': 1000,
            'connection_timeout': 10,
            'receive_timeout': 10
        }
        ldap_config = self._section('ldap')
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        # Export defaults
        export_defaults = {
            'identity_attribute': 'mail',
            'attributes': [],
            'extension_attributes': [],
            'output_dir': 'output',
            'file_name': 'userprofiles.json',
            'write_local': True,
            'csv_fields': [],
            'csv_file_name': 'userprofiles.csv'
        }
        export_config = self._section('export')
        for key, value in export_defaults.items():
            export_config.setdefault(key, value)

        # Publisher defaults
        publisher_defaults = {
            'name': 'SharePoint',
            'identity_type': 'Email',
            'identity_field': 'idName',
            'verify_ssl': True,
            'timeout': 30
        }
        publisher_config = self._section('publisher')
        for key, value in publisher_defaults.items():
            publisher_config.setdefault(key, value)

        # Mapping defaults
        mapping_config = self._section('mapping')
        mapping_config.setdefault('strictness', 'fail')

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self._section('notifications')
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


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
