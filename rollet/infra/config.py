"""
rollet Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (ROLLET_*)
    2. Runtime overrides
    3. User config file (~/.rollet/config.yaml)
    4. Project config file (./rollet.yaml or ./config/rollet.yaml)
    5. Default values
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from rollet.errors import RolletError

T = TypeVar("T")


class ConfigError(RolletError):
    """Configuration error."""

    code = "config_error"


class ValidationError(ConfigError):
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
    secret: bool = False  # Don't log if True
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
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def clear(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == list:
            return value.split(",")  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class JoinConfig:
    """Configuration for the join handshake."""
    challenge_ttl_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=15_000,
        env_var="ROLLET_JOIN_CHALLENGE_TTL_MS",
        description="Join challenge lifetime in milliseconds",
        validator=lambda x: x > 0,
    ))
    nonce_max_age_hours: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=24,
        env_var="ROLLET_JOIN_NONCE_MAX_AGE_HOURS",
        description="How long consumed join nonces are remembered",
        validator=lambda x: x > 0,
    ))


@dataclass
class BetsConfig:
    """Configuration for bet certificates."""
    cert_ttl_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5 * 60 * 1000,
        env_var="ROLLET_BET_CERT_TTL_MS",
        description="Bet certificate lifetime in milliseconds",
        validator=lambda x: x > 0,
    ))
    signing_workers: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=4,
        env_var="ROLLET_BET_SIGNING_WORKERS",
        description="Threads used to sign per-seat certificates at round lock",
        validator=lambda x: 0 < x <= 64,
    ))


@dataclass
class ReceiptsConfig:
    """Configuration for bank receipts."""
    ttl_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=0,
        env_var="ROLLET_RECEIPT_TTL_MS",
        description="Receipt lifetime in milliseconds (0 = no expiry)",
        validator=lambda x: x >= 0,
    ))


@dataclass
class CodesConfig:
    """Configuration for derived codes."""
    totp_step_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=60_000,
        env_var="ROLLET_TOTP_STEP_MS",
        description="TOTP time step in milliseconds",
        validator=lambda x: x > 0,
    ))
    totp_window: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="ROLLET_TOTP_WINDOW",
        description="Accepted TOTP steps either side of the reference step",
        validator=lambda x: 0 <= x <= 10,
    ))


@dataclass
class LedgerConfig:
    """Configuration for the local ledger."""
    path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="ROLLET_LEDGER_PATH",
        description="Ledger file path (empty = in-memory)",
    ))


@dataclass
class SyncConfig:
    """Configuration for remote authority sync."""
    authority_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="ROLLET_AUTH_URL",
        description="Base URL of the remote authority (empty = offline mode)",
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=10.0,
        env_var="ROLLET_SYNC_TIMEOUT",
        description="Per-request timeout in seconds",
        validator=lambda x: x > 0,
    ))
    max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="ROLLET_SYNC_MAX_ATTEMPTS",
        description="Maximum sync attempts per call",
        validator=lambda x: x >= 1,
    ))
    base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.5,
        env_var="ROLLET_SYNC_BASE_DELAY",
        description="Base backoff delay in seconds",
        validator=lambda x: x >= 0,
    ))
    max_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=8.0,
        env_var="ROLLET_SYNC_MAX_DELAY",
        description="Backoff delay cap in seconds",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="ROLLET_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="ROLLET_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class RolletConfig:
    """
    Root configuration for rollet.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    join: JoinConfig = field(default_factory=JoinConfig)
    bets: BetsConfig = field(default_factory=BetsConfig)
    receipts: ReceiptsConfig = field(default_factory=ReceiptsConfig)
    codes: CodesConfig = field(default_factory=CodesConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return "***" if obj.secret else obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)


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

        self._config = RolletConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[RolletConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> RolletConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration file must contain a mapping: {path}")
            self._apply_dict(data)
            if path not in self._config_paths:
                self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("rollet.yaml"),
            Path("config/rollet.yaml"),
            Path.home() / ".rollet" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("sync.max_attempts", 5)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("bets.cert_ttl_ms")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def watch(self, callback: Callable[[RolletConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def reset(self) -> None:
        """Drop runtime overrides and loaded files (tests)."""
        self._config = RolletConfig()
        self._config_paths = []

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
                except (TypeError, ValueError) as e:
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


def get_config() -> RolletConfig:
    """Get the current rollet configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
