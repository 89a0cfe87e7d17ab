"""Best-effort filesystem write observer built on inotifywait.

The observer only helps the operator spot services that keep writing to disk;
nothing in the backup depends on it working.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from rbak.events import ChangeEvent, EventBus
from rbak.executor import Executor, Process

__all__ = [
    "ChangeObserver",
    "ObserverHandle",
    "build_exclude_regex",
    "parse_change_line",
]

logger = logging.getLogger(__name__)

WATCHED_EVENTS = ("modify", "attrib", "move", "create", "delete")
MAX_USER_WATCHES_PATH = Path("/proc/sys/fs/inotify/max_user_watches")

_ERE_SPECIAL = set(".[]()*+?{}|^$\\")


def _ere_escape(text: str) -> str:
    return "".join(f"\\{char}" if char in _ERE_SPECIAL else char for char in text)


def build_exclude_regex(prefixes: Sequence[str]) -> str | None:
    """Build an inotifywait --exclude regex matching paths under any prefix."""
    if not prefixes:
        return None
    alternatives = "|".join(_ere_escape(prefix.rstrip("/") or "/") for prefix in prefixes)
    return f"^({alternatives})(/|$)"


def parse_change_line(line: str) -> ChangeEvent | None:
    """Parse one ``%e|%w%f`` formatted inotifywait line."""
    event_kind, sep, path = line.partition("|")
    if not sep or not event_kind or not path:
        return None
    return ChangeEvent(path=path, event_kind=event_kind)


@dataclass
class ObserverHandle:
    """A running inotifywait process and the task pumping its output."""

    process: Process
    pump: asyncio.Task[None]


class ChangeObserver:
    """Spawns and stops the inotifywait watcher."""

    def __init__(
        self,
        executor: Executor,
        event_bus: EventBus,
        *,
        enabled: bool,
        exclude: Sequence[str] = (),
        max_user_watches: int | None = None,
        binary: str = "inotifywait",
    ) -> None:
        self._executor = executor
        self._event_bus = event_bus
        self._enabled = enabled
        self._exclude = tuple(exclude)
        self._max_user_watches = max_user_watches
        self._binary = binary

    @property
    def enabled(self) -> bool:
        return self._enabled

    def build_command(self, extra_exclude: Sequence[str] = ()) -> list[str]:
        """Build the inotifywait argument list."""
        cmd = [self._binary, "-m", "-r"]
        for event in WATCHED_EVENTS:
            cmd += ["-e", event]
        cmd += ["--format", "%e|%w%f"]
        exclude_regex = build_exclude_regex([*self._exclude, *extra_exclude])
        if exclude_regex is not None:
            cmd += ["--exclude", exclude_regex]
        cmd.append("/")
        return cmd

    async def spawn(self, extra_exclude: Sequence[str] = ()) -> ObserverHandle | None:
        """Start watching the root filesystem.

        Args:
            extra_exclude: Additional path prefixes to ignore (the backup target)

        Returns:
            Handle for stop(), or None when disabled or inotifywait is unavailable
        """
        if not self._enabled:
            return None

        self._raise_watch_limit()
        try:
            process = await self._executor.start_process(self.build_command(extra_exclude))
        except OSError as e:
            logger.warning("Change observer unavailable: %s", e)
            return None

        logger.info("Change observer started (pid %d)", process.pid)
        pump = asyncio.create_task(self._pump(process))
        return ObserverHandle(process=process, pump=pump)

    async def stop(self, handle: ObserverHandle | None) -> None:
        """Stop the watcher. Safe on None and on already stopped handles."""
        if handle is None:
            return
        await handle.process.terminate()
        handle.pump.cancel()
        await asyncio.gather(handle.pump, return_exceptions=True)
        logger.debug("Change observer stopped")

    def _raise_watch_limit(self) -> None:
        if self._max_user_watches is None:
            return
        try:
            MAX_USER_WATCHES_PATH.write_text(f"{self._max_user_watches}\n")
        except OSError as e:
            logger.warning("Could not raise inotify watch limit: %s", e)

    async def _pump(self, process: Process) -> None:
        await asyncio.gather(self._pump_stdout(process), self._pump_stderr(process))

    async def _pump_stdout(self, process: Process) -> None:
        async for line in process.stdout():
            event = parse_change_line(line)
            if event is not None:
                self._event_bus.publish(event)

    async def _pump_stderr(self, process: Process) -> None:
        # inotifywait reports "Setting up watches" / "Watches established." here
        async for line in process.stderr():
            logger.info("inotifywait: %s", line.strip())
