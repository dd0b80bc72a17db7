# src/py2scope/services/configuration_service.py
"""
Configuration service for loading connection settings.

Settings live in a YAML file with a ``connection`` section:

    connection:
      host: 192.168.1.50
      port: 5000
      read_timeout: 10.0
      auto_reconnect: true
      config_path: C:/configs/config_PPM.yml

Values not given fall back to the ConnectionConfig defaults. Keyword
overrides (for example from the command line) win over the file.
"""
import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from py2scope.core.errors import ConfigurationError, ErrorCodes
from py2scope.models.connection import ConnectionConfig

CONNECTION_SECTION = 'connection'

_FIELD_TYPES = {
    'host': str,
    'port': int,
    'connect_timeout': float,
    'read_timeout': float,
    'auto_reconnect': bool,
    'max_reconnect_attempts': int,
    'reconnect_delay': float,
    'health_check_interval': float,
    'config_path': str,
    'acquisition_ack_timeout': float,
}


class ConfigurationService:
    """
    Loads and saves ConnectionConfig values.

    Example:
        >>> service = ConfigurationService()
        >>> config = service.load("scope_client.yml", port=5001)
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def load(self, path: Union[str, Path], **overrides: Any) -> ConnectionConfig:
        """
        Load a ConnectionConfig from a YAML file.

        Args:
            path: YAML file to read
            **overrides: Settings that replace file values (None is ignored)

        Raises:
            ConfigurationError: If the file is missing, unreadable, or holds
                unknown or invalid settings
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                error_code=ErrorCodes.CONFIG_NOT_FOUND,
                context={'path': str(path)}
            )

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Could not read configuration file {path}: {e}",
                error_code=ErrorCodes.CONFIG_INVALID,
                cause=e
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file {path} must contain a mapping",
                error_code=ErrorCodes.CONFIG_INVALID
            )

        section = data.get(CONNECTION_SECTION, {}) or {}
        if not isinstance(section, dict):
            raise ConfigurationError(
                f"'{CONNECTION_SECTION}' in {path} must be a mapping",
                setting_name=CONNECTION_SECTION,
                error_code=ErrorCodes.CONFIG_INVALID
            )

        self.logger.info(f"Loaded connection settings from {path}")
        return self.from_dict(section, **overrides)

    def from_dict(self, values: Dict[str, Any], **overrides: Any) -> ConnectionConfig:
        """
        Build a validated ConnectionConfig from a plain dictionary.

        Raises:
            ConfigurationError: On unknown keys, bad types or invalid values
        """
        merged = dict(values)
        merged.update({k: v for k, v in overrides.items() if v is not None})

        known = {f.name for f in fields(ConnectionConfig)}
        unknown = sorted(set(merged) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown connection settings: {', '.join(unknown)}",
                setting_name=unknown[0],
                error_code=ErrorCodes.UNKNOWN_SETTING,
                suggestions=[f"Valid settings: {', '.join(sorted(known))}"]
            )

        for name in ('host', 'port'):
            if merged.get(name) is None:
                raise ConfigurationError(
                    f"Missing required setting: {name}",
                    setting_name=name,
                    error_code=ErrorCodes.CONFIG_INVALID
                )

        converted = {name: self._convert(name, value)
                     for name, value in merged.items() if value is not None}
        config = ConnectionConfig(**converted)

        valid, errors = config.validate()
        if not valid:
            raise ConfigurationError(
                f"Invalid connection settings: {'; '.join(errors)}",
                error_code=ErrorCodes.CONFIG_INVALID
            )
        return config

    def save(self, config: ConnectionConfig, path: Union[str, Path]) -> None:
        """Write ``config`` as a YAML file with a ``connection`` section."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {CONNECTION_SECTION: config.to_dict()}
        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2)
        self.logger.info(f"Saved connection settings to {path}")

    @staticmethod
    def _convert(name: str, value: Any) -> Any:
        if value is None:
            return None
        expected = _FIELD_TYPES[name]
        if expected is bool:
            if isinstance(value, bool):
                return value
            raise ConfigurationError(
                f"Setting '{name}' must be true or false, got {value!r}",
                setting_name=name,
                error_code=ErrorCodes.CONFIG_INVALID
            )
        if expected is int and (isinstance(value, bool)
                                or (isinstance(value, float) and not value.is_integer())):
            raise ConfigurationError(
                f"Setting '{name}' must be a whole number, got {value!r}",
                setting_name=name,
                error_code=ErrorCodes.CONFIG_INVALID
            )
        try:
            return expected(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Setting '{name}' must be {expected.__name__}, got {value!r}",
                setting_name=name,
                error_code=ErrorCodes.CONFIG_INVALID,
                cause=e
            )


def load_connection_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> ConnectionConfig:
    """
    Convenience wrapper: load from ``path`` if given, else build from overrides.
    """
    service = ConfigurationService()
    if path is None:
        return service.from_dict({}, **overrides)
    return service.load(path, **overrides)
