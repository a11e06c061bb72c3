"""
ARBOR Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (ARBOR_*)
    2. Runtime overrides
    3. User config file (~/.arbor/config.yaml)
    4. Project config file (./arbor.yaml, ./config/arbor.yaml)
    5. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from arbor.errors import ArborError
from arbor.hardening import UINT256_MAX

logger = logging.getLogger(__name__)

T = TypeVar("T")

CUSTODY_MODES = ("escrow", "none")
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class ConfigError(ArborError):
    """Configuration error."""
    code = "config_error"


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    code = "config_invalid"


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with coercion and validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        elif isinstance(self.default, Decimal) and not isinstance(value, Decimal):
            value = Decimal(str(value))

        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        """Drop any runtime override."""
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        try:
            if target_type == bool:
                return value.strip().lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == Decimal:
                return Decimal(value)  # type: ignore
            else:
                return value  # type: ignore
        except (ValueError, ArithmeticError) as e:
            raise ConfigValidationError(f"Cannot coerce {value!r} to {target_type.__name__}") from e

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class GraphConfig:
    """Configuration for the Link Graph."""
    max_depth: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=4096,
        env_var="ARBOR_GRAPH_MAX_DEPTH",
        description="Defensive bound on root-walk length (hops)",
        validator=lambda x: 0 < x <= 1_000_000,
    ))


@dataclass
class LedgerConfig:
    """Configuration for the Attachment Ledger."""
    max_amount: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal(UINT256_MAX),
        env_var="ARBOR_LEDGER_MAX_AMOUNT",
        description="Largest balance a single attachment may hold",
        validator=lambda x: x.is_finite() and x > 0,
    ))


@dataclass
class ProtocolConfig:
    """Configuration for the Composition Protocol."""
    custody_mode: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="escrow",
        env_var="ARBOR_PROTOCOL_CUSTODY_MODE",
        description="Non-fungible custody on link (escrow, none)",
        validator=lambda x: x in CUSTODY_MODES,
    ))
    enforce_authorization: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="ARBOR_PROTOCOL_ENFORCE_AUTH",
        description="Require root-holder authority for mutating operations",
    ))
    accept_unsolicited_transfers: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="ARBOR_PROTOCOL_ACCEPT_UNSOLICITED",
        description="Acknowledge incoming transfers the protocol did not initiate",
    ))
    max_annotation_bytes: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=65536,
        env_var="ARBOR_PROTOCOL_MAX_ANNOTATION",
        description="Maximum size of the opaque per-operation annotation",
        validator=lambda x: 0 <= x <= 1024 * 1024,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="ARBOR_LOG_LEVEL",
        description="Log level (debug, info, warning, error, critical)",
        validator=lambda x: x in LOG_LEVELS,
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="ARBOR_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))
    enable_tracing: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="ARBOR_TRACING_ENABLED",
        description="Wrap protocol operations in tracing spans",
    ))


@dataclass
class ArborConfig:
    """
    Root configuration for ARBOR.

    Aggregates all component configurations and provides
    serialisation helpers.
    """
    graph: GraphConfig = field(default_factory=GraphConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                return str(value) if isinstance(value, Decimal) else value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


def apply_config_dict(config: ArborConfig, data: Dict[str, Any]) -> None:
    """Apply nested dictionary values onto a configuration tree."""
    def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
        for key, value in values.items():
            path = f"{prefix}.{key}" if prefix else key
            if not hasattr(config_obj, key):
                logger.warning("Ignoring unknown config key %s", path)
                continue
            attr = getattr(config_obj, key)
            if isinstance(attr, ConfigValue):
                attr.set(value)
            elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                apply_to_config(attr, value, path)
            else:
                raise ConfigError(f"Invalid config section: {path}")

    apply_to_config(config, data, "")


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = ArborConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[ArborConfig], None]] = []
        self._initialized = True

    @classmethod
    def reset_instance(cls) -> None:
        """Discard the singleton (tests and CLI re-initialisation)."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> ArborConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            apply_config_dict(self._config, data)
        if path not in self._config_paths:
            self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path.home() / ".arbor" / "config.yaml",
            Path("config/arbor.yaml"),
            Path("arbor.yaml"),
        ]

        for path in default_paths:
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as e:
                    logger.warning("Skipping default config %s: %s", path, e)

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("graph.max_depth", 512)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("graph.max_depth")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, "__dataclass_fields__") or part not in obj.__dataclass_fields__:
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def watch(self, callback: Callable[[ArborConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> ArborConfig:
    """Get the current ARBOR configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
