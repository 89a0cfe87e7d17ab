"""Precondition checks run before anything is paused.

Every check here is free of side effects: no files are written, no process is
signalled and no service is touched. The checks run in a fixed order and stop
at the first failure.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from rich.console import Console

from rbak.config import Configuration
from rbak.models import (
    GraphicalSessionError,
    InsufficientPrivilegeError,
    InvalidSuffixError,
    TargetMissingError,
    UnconfiguredError,
)
from rbak.targets import BackupTarget, list_existing_backups

__all__ = [
    "DISPLAY_VARIABLES",
    "show_usage",
    "validate",
]

# Environment variables set inside X11 and Wayland desktop sessions
DISPLAY_VARIABLES = ("DISPLAY", "WAYLAND_DISPLAY")


def validate(
    config: Configuration,
    suffix: str | None,
    *,
    environ: Mapping[str, str] | None = None,
    euid: int | None = None,
) -> BackupTarget | None:
    """Check that a backup run may start.

    Args:
        config: Loaded configuration
        suffix: Backup directory suffix from the command line, or None
        environ: Environment to inspect (defaults to os.environ)
        euid: Effective user id (defaults to os.geteuid())

    Returns:
        The resolved BackupTarget, or None when no suffix was given and only
        usage information should be shown.

    Raises:
        UnconfiguredError: configuration_affirmed is not true
        InsufficientPrivilegeError: not running as root
        InvalidSuffixError: suffix is empty or contains a path separator
        TargetMissingError: the target directory does not exist
        GraphicalSessionError: a desktop session variable is set
    """
    environ = os.environ if environ is None else environ
    euid = os.geteuid() if euid is None else euid

    if not config.configuration_affirmed:
        raise UnconfiguredError(
            "rbak needs to be configured first. Review the configuration file and set configuration_affirmed: true"
        )

    if euid != 0:
        raise InsufficientPrivilegeError("rbak must be run as root")

    if suffix is None:
        return None

    if not suffix or "/" in suffix or suffix in (".", ".."):
        raise InvalidSuffixError(f"Invalid backup suffix: {suffix!r}")

    target = BackupTarget(base_path=config.resolved_base_path, suffix=suffix)
    if not target.exists():
        raise TargetMissingError(str(target.path))

    for variable in DISPLAY_VARIABLES:
        if environ.get(variable):
            raise GraphicalSessionError(
                f"rbak must not be run from a graphical session ({variable} is set). "
                "Switch to a text console first."
            )

    return target


def show_usage(config: Configuration, console: Console, prog: str = "rbak") -> None:
    """Print usage, the configured base path, exclusions and existing backups."""
    base_path = config.resolved_base_path
    console.print(f"Usage: {prog} <suffix>")
    console.print(f"Backup directory base name: {base_path}")
    console.print(f"Excluded from copy: {', '.join(config.exclude_patterns)}")
    console.print(f"Example: '{prog} 1' will rsync the current system to {base_path}.1")

    backups = list_existing_backups(base_path)
    if not backups:
        console.print(f"[yellow]Warning:[/yellow] No backup directories found: {base_path}.*")
        return

    console.print("Existing backups:")
    for backup in backups:
        console.print(f"  {backup.modified:%Y-%m-%d %H:%M}  {backup.path}")
