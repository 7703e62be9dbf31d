"""
Configuration management for PlanVault.

This module handles loading, validating, and saving configuration settings.
"""

from planvault.config.settings import (
    PASSWORD_ENV_VAR,
    BackupConfig,
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "BackupConfig",
    "load_config",
    "save_config",
    "get_config_path",
    "ConfigurationError",
    "PASSWORD_ENV_VAR",
]
