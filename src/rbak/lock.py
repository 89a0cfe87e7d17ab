"""Single-run guard for rbak.

Two runs freezing the same machine at once would each resume the other's
processes too early, so every run holds an exclusive flock on /run/rbak.lock.
"""

from __future__ import annotations

import fcntl
import os
from pathlib import Path

__all__ = [
    "LOCK_PATH",
    "RunLock",
]

LOCK_PATH = Path("/run/rbak.lock")


class RunLock:
    """Exclusive, non-blocking flock held for the duration of one backup run.

    The kernel drops the flock when the holding process dies, so a crashed run
    never leaves the machine locked. The file body only names the holder for
    the "already running" message; its presence means nothing.
    """

    def __init__(self, lock_path: Path = LOCK_PATH) -> None:
        self._lock_path = lock_path
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self, holder_info: str | None = None) -> bool:
        """Try to take the lock without waiting.

        Args:
            holder_info: Written into the lock file, e.g. "hostname:pid:run_id"

        Returns:
            False when another run holds the lock
        """
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._lock_path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False

        self._fd = fd
        os.ftruncate(fd, 0)
        os.write(fd, (holder_info or str(os.getpid())).encode())
        return True

    def get_holder_info(self) -> str | None:
        """Holder written by the run owning the lock, if any."""
        try:
            holder = self._lock_path.read_text().strip()
        except FileNotFoundError:
            return None
        return holder or None

    def release(self) -> None:
        """Drop the lock. No-op when not held."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
