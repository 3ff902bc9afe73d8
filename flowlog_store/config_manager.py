"""Settings management for flowlog-store.

This module provides:
- YAML settings loading with override files
- Settings schema validation
- Environment variable overrides for connection details and secrets
- Secrets redaction on export
"""

import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List, Union
from copy import deepcopy

import yaml
from jsonschema import validate, ValidationError

from .db.config.db_config import DatabaseConfig, DatabaseConfigValidator, create_default_config
from .db.core.exceptions import ConfigurationError
from .security import InputValidator

logger = logging.getLogger('flowlog.config')


_POOL_SCHEMA = {
    "type": "object",
    "properties": {
        "min": {"type": "integer", "minimum": 0},
        "max": {"type": "integer", "minimum": 1},
        "acquire_timeout_millis": {"type": "integer", "minimum": 0},
        "idle_timeout_millis": {"type": "integer", "minimum": 0}
    }
}

# Settings schema for validation
SETTINGS_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["database"],
    "properties": {
        "database": {
            "type": "object",
            "required": ["type"],
            "properties": {
                "type": {"type": "string", "enum": ["sqlite", "postgresql", "clickhouse", "duckdb"]},
                "connection_string": {"type": "string"},
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "database": {"type": "string"},
                "filename": {"type": "string"},
                "username": {"type": "string"},
                "password": {"type": "string"},
                "max_connections": {"type": "integer", "minimum": 1},
                "ssl": {"type": ["boolean", "object"]},
                "pool": _POOL_SCHEMA,
                "clickhouse": {"type": "object"},
                "duckdb": {"type": "object"}
            }
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
                "log_dir": {"type": "string"}
            }
        },
        "storage": {
            "type": "object",
            "properties": {
                "batch_size": {"type": "integer", "minimum": 1},
                "max_query_rows": {"type": "integer", "minimum": 1}
            }
        }
    }
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "database": {
        "type": "sqlite",
        "filename": "flowlogs.db",
    },
    "logging": {
        "level": "INFO",
    },
    "storage": {
        "batch_size": 1000,
        "max_query_rows": 50000,
    },
}


class SettingsManager:
    """Loads, merges and validates flowlog-store settings."""

    # Environment variable mappings, applied over file values
    ENV_MAPPINGS = {
        'database.type': 'FLOWLOG_DB_TYPE',
        'database.connection_string': 'FLOWLOG_DB_CONNECTION',
        'database.filename': 'FLOWLOG_DB_PATH',
        'database.host': 'FLOWLOG_DB_HOST',
        'database.password': 'FLOWLOG_DB_PASSWORD',
        'logging.level': 'FLOWLOG_LOG_LEVEL',
    }

    SENSITIVE_KEYS = ('password', 'secret', 'token', 'credential', 'private_key', 'access_key')

    def __init__(self, base_config_path: Optional[Union[str, Path]] = None):
        """Initialize the manager.

        Args:
            base_config_path: Settings YAML file; built-in defaults when None

        Raises:
            FileNotFoundError: If the given file does not exist
        """
        if base_config_path is None:
            self.base_config_path = None
            self.base_config = deepcopy(DEFAULT_SETTINGS)
        else:
            self.base_config_path = Path(base_config_path)
            if not self.base_config_path.exists():
                raise FileNotFoundError(f"Settings file not found: {base_config_path}")
            self.base_config = self._load_yaml_file(self.base_config_path)

        self.merged_config = deepcopy(self.base_config)
        self._apply_env_overrides()

    def _load_yaml_file(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML file {path}: {e}")
            raise

        if not isinstance(config, dict):
            raise ValueError(f"Settings file must contain a mapping, got {type(config).__name__}")
        return config

    def merge_override(self, override_path: Union[str, Path]) -> None:
        """Merge an override settings file over the current settings."""
        override_path = Path(override_path)
        if not override_path.exists():
            raise FileNotFoundError(f"Override settings not found: {override_path}")

        override_config = self._load_yaml_file(override_path)
        self.merged_config = self._deep_merge(self.merged_config, override_config)
        self._apply_env_overrides()

        logger.info(f"Merged override settings from: {override_path}")

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        result = deepcopy(base)
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _apply_env_overrides(self) -> None:
        for config_path, env_var in self.ENV_MAPPINGS.items():
            env_value = os.environ.get(env_var)
            if env_value:
                self._set_nested_value(self.merged_config, config_path, env_value)
                logger.info(f"Applied environment override for {config_path}")

    def _set_nested_value(self, config: Dict[str, Any], path: str, value: Any) -> None:
        keys = path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _get_nested_value(self, config: Dict[str, Any], path: str,
                          default: Any = None) -> Any:
        current = config
        for key in path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def validate(self, schema: Optional[Dict[str, Any]] = None) -> None:
        """Validate settings against the schema.

        Raises:
            ValidationError: If settings are invalid
        """
        try:
            validate(self.merged_config, schema or SETTINGS_SCHEMA)
        except ValidationError as e:
            logger.error(f"Settings validation failed: {e.message}")
            logger.error(f"Failed at path: {'.'.join(str(p) for p in e.path)}")
            raise
        logger.info("Settings validation successful")

    def get(self, path: str, default: Any = None) -> Any:
        """Get a settings value using dot notation, e.g. 'storage.batch_size'."""
        return self._get_nested_value(self.merged_config, path, default)

    def get_config(self, redact_secrets: bool = True) -> Dict[str, Any]:
        if redact_secrets:
            return self._redact_secrets(deepcopy(self.merged_config))
        return deepcopy(self.merged_config)

    def get_database_config(self) -> DatabaseConfig:
        """Build the DatabaseConfig from the database section.

        Backend defaults fill in whatever the section leaves out.

        Raises:
            ConfigurationError: If the section is missing or invalid
        """
        section = self.get('database')
        if not isinstance(section, dict) or not section.get('type'):
            raise ConfigurationError(["Database type is required"])

        values = {key: value for key, value in section.items() if key != 'type'}
        if isinstance(values.get('port'), str) and values['port'].isdigit():
            values['port'] = int(values['port'])

        errors = DatabaseConfigValidator.validate(dict(section, **values))
        if errors:
            raise ConfigurationError(errors)
        return create_default_config(section['type'], values)

    def _redact_secrets(self, config: Dict[str, Any]) -> Dict[str, Any]:
        def redact(value: Any) -> Any:
            if isinstance(value, dict):
                return {
                    key: '***REDACTED***'
                    if any(s in key.lower() for s in self.SENSITIVE_KEYS) else redact(item)
                    for key, item in value.items()
                }
            if isinstance(value, list):
                return [redact(item) for item in value]
            if isinstance(value, str):
                # credentials embedded in connection strings
                return InputValidator.sanitize_log_message(value)
            return value

        return redact(config)

    def save_merged_config(self, output_path: Union[str, Path],
                           redact_secrets: bool = True) -> None:
        output_path = Path(output_path)
        with open(output_path, 'w') as f:
            yaml.dump(self.get_config(redact_secrets=redact_secrets), f,
                      default_flow_style=False, sort_keys=True)
        logger.info(f"Saved merged settings to: {output_path}")

    def get_required_env_vars(self) -> List[str]:
        """Environment variables for settings absent from both the file and the environment."""
        return [
            env_var for config_path, env_var in self.ENV_MAPPINGS.items()
            if self._get_nested_value(self.base_config, config_path) is None
            and os.environ.get(env_var) is None
        ]


def load_settings(base_path: Optional[Union[str, Path]] = None,
                  override_path: Optional[Union[str, Path]] = None,
                  validate_schema: bool = True) -> SettingsManager:
    """Convenience function to load and validate settings.

    Args:
        base_path: Settings file, built-in defaults when None
        override_path: Optional override file
        validate_schema: Whether to validate against SETTINGS_SCHEMA

    Returns:
        The SettingsManager
    """
    manager = SettingsManager(base_path)
    if override_path:
        manager.merge_override(override_path)
    if validate_schema:
        manager.validate()
    return manager
