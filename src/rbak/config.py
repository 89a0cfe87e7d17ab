"""Configuration loading and validation for rbak."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from rbak.models import ConfigError, LogLevel

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "Configuration",
    "ConfigurationError",
    "SyncConfig",
]

DEFAULT_CONFIG_PATH = Path("/etc/rbak/config.yaml")

DEFAULT_EXCLUDE_PATTERNS = (
    "/dev/*",
    "/proc/*",
    "/sys/*",
    "/tmp/*",
    "/run/*",
    "/mnt/*",
    "/media/*",
    "/var/cache/pacman/*",
    "/lost+found",
    "/data/*",
)

DEFAULT_OBSERVE_EXCLUDE_PATTERNS = (
    "/dev",
    "/proc",
    "/sys",
    "/tmp",
    "/run",
    "/mnt",
    "/media",
    "/lost+found",
    "/data",
)


@dataclass(frozen=True)
class SyncConfig:
    """How the copy engine is invoked."""

    binary: str = "rsync"
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class Configuration:
    """Parsed and validated configuration, loaded once per invocation."""

    configuration_affirmed: bool = False
    base_path: str = "/data/backup/{hostname}.rbak"
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    observe_exclude_patterns: tuple[str, ...] = DEFAULT_OBSERVE_EXCLUDE_PATTERNS
    halt_users: tuple[str, ...] = ()
    halt_services: tuple[str, ...] = ()
    use_change_observer: bool = False
    confirm_before_pause: bool = False
    max_user_watches: int = 999999
    log_file_level: LogLevel = LogLevel.FULL
    log_cli_level: LogLevel = LogLevel.INFO
    sync: SyncConfig = field(default_factory=SyncConfig)

    @property
    def resolved_base_path(self) -> str:
        """base_path with the {hostname} placeholder expanded."""
        return self.base_path.replace("{hostname}", socket.gethostname())

    @classmethod
    def from_yaml(cls, path: Path) -> Configuration:
        """Load and validate configuration from YAML file.

        Args:
            path: Path to config.yaml

        Returns:
            Validated Configuration instance

        Raises:
            ConfigurationError: If YAML is invalid or schema validation fails
        """
        errors: list[ConfigError] = []

        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            errors.append(ConfigError(path=str(path), message=f"Configuration file not found: {path}"))
            raise ConfigurationError(errors) from None
        except PermissionError:
            errors.append(ConfigError(path=str(path), message=f"Configuration file not readable: {path}"))
            raise ConfigurationError(errors) from None
        except yaml.YAMLError as e:
            error_msg = str(e)
            # problem_mark exists on MarkedYAMLError only
            if hasattr(e, "problem_mark") and hasattr(e, "problem"):
                mark = e.problem_mark  # type: ignore[attr-defined]
                problem = e.problem  # type: ignore[attr-defined]
                if mark is not None and problem is not None:
                    error_msg = f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {problem}"
            errors.append(ConfigError(path=str(path), message=error_msg))
            raise ConfigurationError(errors) from e

        if data is None:
            data = {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Configuration:
        """Validate a parsed YAML document and build a Configuration.

        Raises:
            ConfigurationError: If schema validation fails
        """
        errors: list[ConfigError] = []

        validator = jsonschema.Draft7Validator(_load_schema())
        for error in validator.iter_errors(data):
            path_parts = list(error.absolute_path)
            path_str = ".".join(str(p) for p in path_parts) if path_parts else "root"
            errors.append(ConfigError(path=path_str, message=error.message))

        if errors:
            raise ConfigurationError(errors)

        log_file_level = LogLevel.FULL
        log_cli_level = LogLevel.INFO
        try:
            log_file_level = _parse_log_level(data.get("log_file_level", "FULL"))
        except ValueError as e:
            errors.append(ConfigError(path="log_file_level", message=str(e)))
        try:
            log_cli_level = _parse_log_level(data.get("log_cli_level", "INFO"))
        except ValueError as e:
            errors.append(ConfigError(path="log_cli_level", message=str(e)))

        if errors:
            raise ConfigurationError(errors)

        sync_data = data.get("sync", {})
        observer_data = data.get("observer", {})

        return cls(
            configuration_affirmed=data.get("configuration_affirmed", False),
            base_path=data.get("base_path", cls.base_path),
            exclude_patterns=tuple(data.get("exclude_patterns", DEFAULT_EXCLUDE_PATTERNS)),
            observe_exclude_patterns=tuple(
                data.get("observe_exclude_patterns", DEFAULT_OBSERVE_EXCLUDE_PATTERNS)
            ),
            halt_users=_unique(data.get("halt_users", [])),
            halt_services=_unique(data.get("halt_services", [])),
            use_change_observer=data.get("use_change_observer", False),
            confirm_before_pause=data.get("confirm_before_pause", False),
            max_user_watches=observer_data.get("max_user_watches", 999999),
            log_file_level=log_file_level,
            log_cli_level=log_cli_level,
            sync=SyncConfig(
                binary=sync_data.get("binary", "rsync"),
                extra_args=tuple(sync_data.get("extra_args", [])),
            ),
        )

    @classmethod
    def get_default_config_path(cls) -> Path:
        """Get the config file path, honouring RBAK_CONFIG."""
        override = os.environ.get("RBAK_CONFIG")
        return Path(override) if override else DEFAULT_CONFIG_PATH


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, errors: list[ConfigError]) -> None:
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


def _unique(values: list[str]) -> tuple[str, ...]:
    """Drop duplicates, keeping first-seen order."""
    return tuple(dict.fromkeys(values))


def _load_schema() -> dict[str, Any]:
    """Load the config schema from package resources."""
    schema_path = Path(__file__).parent / "schemas" / "config-schema.yaml"
    with schema_path.open() as f:
        return yaml.safe_load(f)


def _parse_log_level(value: str) -> LogLevel:
    """Parse a log level string to LogLevel enum."""
    try:
        return LogLevel[value.upper()]
    except KeyError as e:
        valid_levels = ", ".join(level.name for level in LogLevel)
        raise ValueError(f"Invalid log level: {value}. Valid levels: {valid_levels}") from e
