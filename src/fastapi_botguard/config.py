"""Configuration management for FastAPI BotGuard.

All tunables live in one pydantic model, ``BotGuardConfig``, with a nested
section per component. Values come from files (YAML, JSON, TOML) and
``BOTGUARD_`` environment variables, deep-merged by priority and validated
in one step.
"""

import ipaddress
import json
import logging
import os
from abc import ABC, abstractmethod
from copy import deepcopy
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import toml
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from fastapi_botguard.collector import CollectorConfig
from fastapi_botguard.errors import ConfigurationError
from fastapi_botguard.features import FeatureConfig
from fastapi_botguard.policy import PolicyConfig
from fastapi_botguard.rate_limit import RateLimitConfig
from fastapi_botguard.recaptcha import RecaptchaConfig
from fastapi_botguard.reputation import ReputationConfig
from fastapi_botguard.risk import RiskConfig


class ConfigFormat(str, Enum):
    """Supported configuration file formats."""
    JSON = "json"
    YAML = "yaml"
    TOML = "toml"


class ConfigSource(str, Enum):
    """Configuration source types."""
    FILE = "file"
    ENVIRONMENT = "environment"
    DICT = "dict"


class BotGuardConfig(BaseModel):
    """Complete engine configuration."""

    collector: CollectorConfig = Field(default_factory=CollectorConfig)
    features: FeatureConfig = Field(default_factory=FeatureConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    reputation: ReputationConfig = Field(default_factory=ReputationConfig)
    recaptcha: RecaptchaConfig = Field(default_factory=RecaptchaConfig)
    include_decision_headers: bool = True
    # networks whose X-Forwarded-For (and similar) headers are believed;
    # None believes every client
    trusted_proxies: Optional[List[str]] = None

    @field_validator('trusted_proxies')
    @classmethod
    def validate_trusted_proxies(cls, v):
        if v is not None:
            for network in v:
                ipaddress.ip_network(network, strict=False)
        return v


class ConfigLoader(ABC):
    """Abstract base class for configuration loaders."""

    def __init__(self, source_config: Dict[str, Any]):
        self.source_config = source_config
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def load(self) -> Dict[str, Any]:
        """Load configuration from source."""
        pass


class DictConfigLoader(ConfigLoader):
    """Configuration given inline, e.g. from application code."""

    async def load(self) -> Dict[str, Any]:
        return deepcopy(self.source_config.get('values', {}))


class FileConfigLoader(ConfigLoader):
    """File-based configuration loader."""

    def __init__(self, source_config: Dict[str, Any]):
        super().__init__(source_config)
        self.file_path = Path(source_config.get('path', 'botguard.yaml'))
        self.format = ConfigFormat(source_config.get('format', self._detect_format()))
        self.encoding = source_config.get('encoding', 'utf-8')
        self.required = source_config.get('required', False)

    def _detect_format(self) -> str:
        """Detect file format from extension."""
        suffix = self.file_path.suffix.lower()
        format_map = {
            '.json': ConfigFormat.JSON,
            '.yaml': ConfigFormat.YAML,
            '.yml': ConfigFormat.YAML,
            '.toml': ConfigFormat.TOML,
        }
        return format_map.get(suffix, ConfigFormat.YAML).value

    async def load(self) -> Dict[str, Any]:
        """Load configuration from file."""
        if not self.file_path.exists():
            if self.required:
                raise ConfigurationError(f"Configuration file not found: {self.file_path}")
            self.logger.warning(f"Configuration file not found: {self.file_path}")
            return {}

        content = self.file_path.read_text(encoding=self.encoding)
        try:
            if self.format == ConfigFormat.JSON:
                data = json.loads(content)
            elif self.format == ConfigFormat.YAML:
                data = yaml.safe_load(content) or {}
            else:
                data = toml.loads(content)
        except (json.JSONDecodeError, yaml.YAMLError, toml.TomlDecodeError) as e:
            raise ConfigurationError(
                f"Failed to parse {self.format.value} config {self.file_path}: {e}"
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Top level of {self.file_path} must be a mapping")
        return data


class EnvironmentConfigLoader(ConfigLoader):
    """Environment variables configuration loader.

    ``BOTGUARD_RATE_LIMIT__MAX_REQUESTS=50`` becomes
    ``{"rate_limit": {"max_requests": 50}}``.
    """

    def __init__(self, source_config: Dict[str, Any]):
        super().__init__(source_config)
        self.prefix = source_config.get('prefix', 'BOTGUARD_')
        self.separator = source_config.get('separator', '__')
        self.environ = source_config.get('environ', os.environ)

    async def load(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        for key, value in self.environ.items():
            if not key.upper().startswith(self.prefix.upper()):
                continue
            config_key = key[len(self.prefix):]
            self._set_nested_key(config, config_key, value)

        return config

    def _set_nested_key(self, config: Dict[str, Any], key_path: str, value: str):
        """Set nested dictionary key from separated path."""
        keys = [k.lower() for k in key_path.split(self.separator)]

        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = self._convert_type(value)

    def _convert_type(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ('true', 'false'):
            return value.lower() == 'true'

        if value.isdigit():
            return int(value)

        try:
            return float(value)
        except ValueError:
            pass

        if ',' in value:
            return [self._convert_type(item.strip()) for item in value.split(',')]

        return value


class ConfigManager:
    """Merges configuration sources by priority into a BotGuardConfig."""

    def __init__(self, name: str = "botguard"):
        self.name = name
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._loaders: List[Tuple[ConfigLoader, int]] = []
        self._config: Optional[BotGuardConfig] = None

    @property
    def config(self) -> Optional[BotGuardConfig]:
        return self._config

    def add_source(self, source_type: ConfigSource, config: Dict[str, Any], priority: int = 100) -> 'ConfigManager':
        """Add configuration source; higher priority wins on conflicts."""
        loader = self._create_loader(source_type, config)
        self._loaders.append((loader, priority))
        self._loaders.sort(key=lambda x: x[1], reverse=True)
        return self

    def _create_loader(self, source_type: ConfigSource, config: Dict[str, Any]) -> ConfigLoader:
        """Create appropriate configuration loader."""
        if source_type == ConfigSource.FILE:
            return FileConfigLoader(config)
        elif source_type == ConfigSource.ENVIRONMENT:
            return EnvironmentConfigLoader(config)
        elif source_type == ConfigSource.DICT:
            return DictConfigLoader(config)
        else:
            raise ValueError(f"Unsupported source type: {source_type}")

    async def load(self) -> BotGuardConfig:
        """Load, merge and validate all sources."""
        merged: Dict[str, Any] = {}
        # lowest priority first so higher priorities overwrite
        for loader, priority in reversed(self._loaders):
            values = await loader.load()
            if values:
                self.logger.debug(
                    f"Loaded config from {loader.__class__.__name__} with priority {priority}"
                )
                merged = self._deep_merge(merged, values)

        try:
            self._config = BotGuardConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        self.logger.info(f"Configuration '{self.name}' loaded from {len(self._loaders)} source(s)")
        return self._config

    def _deep_merge(self, base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = deepcopy(base)

        for key, value in overlay.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = deepcopy(value)

        return result


async def load_config(
    path: Optional[Union[str, Path]] = None,
    use_environment: bool = True,
    overrides: Optional[Dict[str, Any]] = None,
) -> BotGuardConfig:
    """Load configuration from an optional file, the environment and overrides.

    Priority: overrides > environment > file > defaults.
    """
    manager = ConfigManager()
    if path is not None:
        manager.add_source(ConfigSource.FILE, {'path': str(path), 'required': True}, priority=10)
    if use_environment:
        manager.add_source(ConfigSource.ENVIRONMENT, {}, priority=50)
    if overrides:
        manager.add_source(ConfigSource.DICT, {'values': overrides}, priority=100)
    return await manager.load()
