"""Application configuration helpers."""

from __future__ import annotations

from .database import DatabaseConfig, get_database_config
from .env import optional_positive_int, positive_int, require_env_vars
from .errors import ConfigurationError, InvalidConfigurationError, MissingConfigurationError
from .reconcile import DEFAULT_FIX_BATCH_SIZE, ReconcileConfig, get_reconcile_config

__all__ = [
    "DEFAULT_FIX_BATCH_SIZE",
    "ConfigurationError",
    "DatabaseConfig",
    "InvalidConfigurationError",
    "MissingConfigurationError",
    "ReconcileConfig",
    "get_database_config",
    "get_reconcile_config",
    "optional_positive_int",
    "positive_int",
    "require_env_vars",
]
