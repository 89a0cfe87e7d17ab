"""Pause and resume all processes owned by a set of users."""

from __future__ import annotations

import logging
import os
import signal
from collections.abc import Iterable, Iterator

import psutil

__all__ = [
    "ProcessFreezer",
    "protected_pids",
]

logger = logging.getLogger(__name__)


def protected_pids(pid: int | None = None) -> frozenset[int]:
    """Process ids that must never be stopped.

    These are the given process (default: this one), all its ancestors and
    all its descendants. Stopping an ancestor would freeze the shell the
    operator is typing into; stopping a descendant would freeze the tools rbak
    drives.
    """
    proc = psutil.Process(pid if pid is not None else os.getpid())
    pids = {proc.pid}
    pids.update(parent.pid for parent in proc.parents())
    pids.update(child.pid for child in proc.children(recursive=True))
    return frozenset(pids)


class ProcessFreezer:
    """Sends SIGSTOP/SIGCONT to every process of the configured users.

    Both operations are idempotent: stopping a stopped process or continuing a
    running one has no effect, and a user without processes yields a count of 0.
    """

    def __init__(self, protected: Iterable[int] | None = None) -> None:
        """Initialize the freezer.

        Args:
            protected: Process ids never to signal. Computed from the current
                process tree on each call when None.
        """
        self._protected = frozenset(protected) if protected is not None else None

    def freeze(self, users: Iterable[str]) -> dict[str, int]:
        """Stop all processes of each user.

        Returns:
            Number of processes signalled, per user
        """
        return self._signal_users(users, signal.SIGSTOP)

    def resume(self, users: Iterable[str]) -> dict[str, int]:
        """Continue all processes of each user.

        Returns:
            Number of processes signalled, per user
        """
        return self._signal_users(users, signal.SIGCONT)

    def _signal_users(self, users: Iterable[str], sig: signal.Signals) -> dict[str, int]:
        protected = self._protected if self._protected is not None else protected_pids()
        counts: dict[str, int] = {}
        for user in users:
            count = 0
            for proc in self._user_processes(user, protected):
                try:
                    proc.send_signal(sig)
                except psutil.NoSuchProcess:
                    logger.debug("Process %d of %s exited before %s", proc.pid, user, sig.name)
                    continue
                except psutil.AccessDenied:
                    logger.warning("Not allowed to send %s to process %d of %s", sig.name, proc.pid, user)
                    continue
                count += 1
            counts[user] = count
            logger.info("%s sent to %d processes of %s", sig.name, count, user)
        return counts

    def _user_processes(self, user: str, protected: frozenset[int]) -> Iterator[psutil.Process]:
        for proc in psutil.process_iter(["pid", "username"]):
            if proc.info["username"] != user:
                continue
            if proc.pid in protected:
                continue
            yield proc
