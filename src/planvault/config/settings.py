"""
Configuration settings management for PlanVault.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.planvault/config.yaml by default, with the
path overridable via the PLANVAULT_CONFIG environment variable.

File Layout:
    planvault:
      data_dir: ~/.planvault/data
      log_level: INFO
    backup:
      downloads_dir: ~/Downloads
      pbkdf2_iterations: 600000
      min_password_length: 8
      require_valid_emergency_export: false
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from planvault.codec.crypto import (
    MAX_PBKDF2_ITERATIONS,
    MIN_PASSWORD_LENGTH,
    MIN_PBKDF2_ITERATIONS,
    PBKDF2_ITERATIONS,
)
from planvault.errors import PlanVaultError

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".planvault"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DOWNLOADS_DIR = Path.home() / "Downloads"

# Environment variable holding the backup password for non-interactive use
PASSWORD_ENV_VAR = "PLANVAULT_PASSWORD"


@dataclass
class BackupConfig:
    """Backup file and encryption settings."""

    downloads_dir: str = str(DEFAULT_DOWNLOADS_DIR)
    pbkdf2_iterations: int = PBKDF2_ITERATIONS
    min_password_length: int = MIN_PASSWORD_LENGTH
    require_valid_emergency_export: bool = False


@dataclass
class Settings:
    """
    Complete PlanVault configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with PLANVAULT_.

    Attributes:
        data_dir: Directory holding the persisted slots.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        backup: Backup file and encryption settings.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"

    backup: BackupConfig = field(default_factory=BackupConfig)

    @property
    def slots_dir(self) -> Path:
        """Directory of the on-disk slot files."""
        return Path(self.data_dir).expanduser() / "slots"


class ConfigurationError(PlanVaultError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from PLANVAULT_CONFIG environment variable if set,
    otherwise returns the default path (~/.planvault/config.yaml).
    """
    env_path = os.environ.get("PLANVAULT_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses PLANVAULT_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")
        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_data = _settings_to_dict(settings)

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    planvault_data = data.get("planvault") or {}

    if "data_dir" in planvault_data:
        settings.data_dir = str(planvault_data["data_dir"])
    if "log_level" in planvault_data:
        settings.log_level = str(planvault_data["log_level"]).upper()

    backup = data.get("backup") or {}
    try:
        if "downloads_dir" in backup:
            settings.backup.downloads_dir = str(backup["downloads_dir"])
        if "pbkdf2_iterations" in backup:
            settings.backup.pbkdf2_iterations = int(backup["pbkdf2_iterations"])
        if "min_password_length" in backup:
            settings.backup.min_password_length = int(backup["min_password_length"])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid number in backup settings: {e}") from e
    if "require_valid_emergency_export" in backup:
        settings.backup.require_valid_emergency_export = bool(
            backup["require_valid_emergency_export"]
        )

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "PLANVAULT_DATA_DIR": ("data_dir", str),
        "PLANVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "PLANVAULT_DOWNLOADS_DIR": ("backup.downloads_dir", str),
        "PLANVAULT_PBKDF2_ITERATIONS": ("backup.pbkdf2_iterations", int),
        "PLANVAULT_MIN_PASSWORD_LENGTH": ("backup.min_password_length", int),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                converted = converter(value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value!r}") from e
            _set_nested_attr(settings, attr_path, converted)

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.backup.pbkdf2_iterations < MIN_PBKDF2_ITERATIONS:
        raise ConfigurationError(
            f"pbkdf2_iterations must be at least {MIN_PBKDF2_ITERATIONS}"
        )

    if settings.backup.pbkdf2_iterations > MAX_PBKDF2_ITERATIONS:
        raise ConfigurationError(
            f"pbkdf2_iterations must be at most {MAX_PBKDF2_ITERATIONS}"
        )

    if settings.backup.min_password_length < MIN_PASSWORD_LENGTH:
        raise ConfigurationError(
            f"min_password_length must be at least {MIN_PASSWORD_LENGTH}"
        )


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "planvault": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
        },
        "backup": {
            "downloads_dir": settings.backup.downloads_dir,
            "pbkdf2_iterations": settings.backup.pbkdf2_iterations,
            "min_password_length": settings.backup.min_password_length,
            "require_valid_emergency_export": settings.backup.require_valid_emergency_export,
        },
    }
