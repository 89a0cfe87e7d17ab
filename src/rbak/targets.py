"""Backup target directories: resolution and listing."""

from __future__ import annotations

import glob
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = [
    "BackupTarget",
    "ExistingBackup",
    "list_existing_backups",
]


@dataclass(frozen=True)
class BackupTarget:
    """Destination directory of one backup run: ``{base_path}.{suffix}``."""

    base_path: str
    suffix: str

    @property
    def path(self) -> Path:
        return Path(f"{self.base_path}.{self.suffix}")

    def exists(self) -> bool:
        return self.path.is_dir()

    def mark_completed(self) -> None:
        """Update the directory mtime, the marker of the last successful run."""
        os.utime(self.path)


@dataclass(frozen=True)
class ExistingBackup:
    """A backup directory found on disk."""

    path: Path
    modified: datetime  # Completion marker of the last successful run


def list_existing_backups(base_path: str) -> list[ExistingBackup]:
    """Find directories matching ``{base_path}.*``, sorted by name.

    Args:
        base_path: Resolved base name of the backup directories

    Returns:
        ExistingBackup entries for each matching directory
    """
    backups: list[ExistingBackup] = []
    for match in sorted(glob.glob(f"{glob.escape(base_path)}.*")):
        path = Path(match)
        if not path.is_dir():
            continue
        modified = datetime.fromtimestamp(path.stat().st_mtime)
        backups.append(ExistingBackup(path=path, modified=modified))
    return backups
