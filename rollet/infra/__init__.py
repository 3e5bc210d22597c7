"""Ambient infrastructure for rollet: configuration, logging, retry."""

from rollet.infra.config import ConfigError, ConfigManager, RolletConfig, get_config, get_config_manager
from rollet.infra.observability import RolletLayer, RolletLogger, get_logger, timed_operation
from rollet.infra.resilience import BackoffStrategy, RetryExhaustedError, RetryPolicy

__all__ = [
    "BackoffStrategy",
    "ConfigError",
    "ConfigManager",
    "RetryExhaustedError",
    "RetryPolicy",
    "RolletConfig",
    "RolletLayer",
    "RolletLogger",
    "get_config",
    "get_config_manager",
    "get_logger",
    "timed_operation",
]
