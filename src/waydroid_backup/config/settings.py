"""
Configuration settings management for waydroid-backup.

This module handles loading and validating configuration settings from a
YAML file with support for environment variable overrides.

Configuration is loaded from /etc/waydroid-backup/config.yaml by default,
with the path overridable via the WAYDROID_BACKUP_CONFIG environment
variable. Settings objects are immutable once loaded; overrides produce new
instances.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_DIR = Path("/etc/waydroid-backup")
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class BackupConfig:
    """Backup store and retention settings."""

    backup_dir: Path = Path("/var/backups/waydroid")
    max_backups: int = 5
    auto_clean: bool = True
    export_dir: Path = Path("/tmp")


@dataclass(frozen=True)
class PathsConfig:
    """Locations of the Waydroid state that gets backed up."""

    waydroid_data: Path = Path("/var/lib/waydroid")
    waydroid_config: Path = Path("/root/.config/waydroid")
    wayvnc_dir: Path = Path("/etc/wayvnc")
    vnc_password_file: Path = Path("/root/vnc-password.txt")


@dataclass(frozen=True)
class ServicesConfig:
    """Service control settings."""

    settle_seconds: float = 3.0
    command_timeout: int = 60


@dataclass(frozen=True)
class Settings:
    """
    Complete waydroid-backup configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        backup: Backup store and retention settings.
        paths: Waydroid, WayVNC and credential locations.
        services: Timeouts used when stopping and starting services.
    """

    log_level: str = "INFO"
    backup: BackupConfig = field(default_factory=BackupConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from WAYDROID_BACKUP_CONFIG environment variable if set,
    otherwise returns the default path (/etc/waydroid-backup/config.yaml).
    """
    env_path = os.environ.get("WAYDROID_BACKUP_CONFIG")
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
                    uses WAYDROID_BACKUP_CONFIG or the default path.

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


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Section '{name}' must be a mapping")
    return value


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    try:
        backup = _section(data, "backup")
        backup_config = settings.backup
        if "backup_dir" in backup:
            backup_config = replace(backup_config, backup_dir=Path(backup["backup_dir"]))
        if "max_backups" in backup:
            backup_config = replace(backup_config, max_backups=int(backup["max_backups"]))
        if "auto_clean" in backup:
            backup_config = replace(backup_config, auto_clean=bool(backup["auto_clean"]))
        if "export_dir" in backup:
            backup_config = replace(backup_config, export_dir=Path(backup["export_dir"]))

        paths = _section(data, "paths")
        paths_config = settings.paths
        for key in ("waydroid_data", "waydroid_config", "wayvnc_dir", "vnc_password_file"):
            if key in paths:
                paths_config = replace(paths_config, **{key: Path(paths[key])})

        services = _section(data, "services")
        services_config = settings.services
        if "settle_seconds" in services:
            services_config = replace(
                services_config, settle_seconds=float(services["settle_seconds"])
            )
        if "command_timeout" in services:
            services_config = replace(
                services_config, command_timeout=int(services["command_timeout"])
            )

        log_level = settings.log_level
        logging_section = _section(data, "logging")
        if "level" in logging_section:
            log_level = str(logging_section["level"]).upper()
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value in config file: {e}") from e

    return replace(
        settings,
        log_level=log_level,
        backup=backup_config,
        paths=paths_config,
        services=services_config,
    )


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    # Later entries win, so the prefixed names override the bare ones.
    env_map: list[tuple[str, str, Callable[[str], Any]]] = [
        ("BACKUP_DIR", "backup.backup_dir", Path),
        ("MAX_BACKUPS", "backup.max_backups", int),
        ("WAYDROID_BACKUP_DIR", "backup.backup_dir", Path),
        ("WAYDROID_BACKUP_MAX_BACKUPS", "backup.max_backups", int),
        ("WAYDROID_BACKUP_EXPORT_DIR", "backup.export_dir", Path),
        ("WAYDROID_BACKUP_LOG_LEVEL", "log_level", str.upper),
    ]

    for env_var, attr_path, converter in env_map:
        value = os.environ.get(env_var)
        if value is None:
            continue
        try:
            converted = converter(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_var}: {value}") from e
        settings = _replace_nested(settings, attr_path, converted)

    return settings


def _replace_nested(obj: Any, path: str, value: Any) -> Any:
    """Return a copy of a frozen dataclass with a dotted attribute replaced."""
    head, _, rest = path.partition(".")
    if not rest:
        return replace(obj, **{head: value})
    return replace(obj, **{head: _replace_nested(getattr(obj, head), rest, value)})


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    if settings.log_level not in VALID_LOG_LEVELS:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    if settings.backup.max_backups < 1:
        raise ConfigurationError("max_backups must be at least 1")

    if settings.services.settle_seconds < 0:
        raise ConfigurationError("settle_seconds cannot be negative")

    if settings.services.command_timeout <= 0:
        raise ConfigurationError("command_timeout must be positive")


def settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "backup": {
            "backup_dir": str(settings.backup.backup_dir),
            "max_backups": settings.backup.max_backups,
            "auto_clean": settings.backup.auto_clean,
            "export_dir": str(settings.backup.export_dir),
        },
        "paths": {
            "waydroid_data": str(settings.paths.waydroid_data),
            "waydroid_config": str(settings.paths.waydroid_config),
            "wayvnc_dir": str(settings.paths.wayvnc_dir),
            "vnc_password_file": str(settings.paths.vnc_password_file),
        },
        "services": {
            "settle_seconds": settings.services.settle_seconds,
            "command_timeout": settings.services.command_timeout,
        },
        "logging": {
            "level": settings.log_level,
        },
    }
