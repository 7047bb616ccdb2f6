"""
Tool configuration loaded from a YAML file.

Example:

    format: logql
    log_level: INFO
    label_matchers:
      juju_model: lma
      juju_application: loki
"""

import logging
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError, format_validation_error

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class ToolConfig(BaseModel):
    """Defaults for the command line tool; flags override them.

    Attributes:
        format: Query dialect, 'promql' or 'logql'
        label_matchers: Matchers injected by ``transform``
        log_level: Root log level name
    """
    model_config = ConfigDict(extra="forbid")

    format: Optional[str] = None
    label_matchers: Dict[str, str] = Field(default_factory=dict)
    log_level: Optional[str] = None

    @field_validator('format')
    @classmethod
    def _format(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else value

    @field_validator('log_level')
    @classmethod
    def _log_level(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return value

    @property
    def level(self) -> Optional[int]:
        return getattr(logging, self.log_level) if self.log_level else None

    @classmethod
    def from_yaml(cls, config_path: str) -> 'ToolConfig':
        """Load configuration from a YAML file.

        Raises:
            ConfigError: If the file is missing or invalid
        """
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        with open(path, 'r') as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path}: configuration must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"{config_path}: {format_validation_error(exc)}") from exc
