"""Copy the running system into the backup directory with rsync."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from pathlib import Path

from rbak.config import SyncConfig
from rbak.events import EventBus, ProgressEvent
from rbak.executor import Executor, Process
from rbak.models import LogLevel, ProgressUpdate, SyncError

__all__ = [
    "RSYNC_OPTIONS",
    "RSYNC_PARTIAL_VANISHED",
    "SyncEngine",
    "parse_progress_line",
]

logger = logging.getLogger(__name__)

# archive, hard links, ACLs, xattrs, one file system, whole files,
# delete extraneous files, overall progress
RSYNC_OPTIONS = ("-aHAXxW", "--delete", "--info=progress2")

# "Partial transfer due to vanished source files": expected on a live system
RSYNC_PARTIAL_VANISHED = 24

# e.g. "  1,234,567  45%   12.34MB/s    0:01:23 (xfr#12, ir-chk=1000/2000)"
_PROGRESS_RE = re.compile(
    r"^\s*(?P<bytes>[\d,.]+[KMGT]?)\s+(?P<percent>\d{1,3})%\s+(?P<rate>\S+)\s+(?P<eta>\d+:\d{2}:\d{2})"
)


def _parse_bytes(value: str) -> int | None:
    # Without --human-readable the byte count is a plain comma-grouped integer
    digits = value.replace(",", "")
    return int(digits) if digits.isdigit() else None


def parse_progress_line(line: str) -> ProgressUpdate | None:
    """Parse an rsync --info=progress2 line, or return None for other output."""
    match = _PROGRESS_RE.match(line)
    if match is None:
        return None
    percent = min(int(match["percent"]), 100)
    return ProgressUpdate(
        percent=percent,
        transferred=_parse_bytes(match["bytes"]),
        rate=match["rate"],
        eta=match["eta"],
    )


class SyncEngine:
    """Runs rsync from ``/`` into the target directory and streams its progress."""

    name = "rsync"

    def __init__(
        self,
        executor: Executor,
        event_bus: EventBus,
        config: SyncConfig,
        exclude: Sequence[str],
    ) -> None:
        self._executor = executor
        self._event_bus = event_bus
        self._config = config
        self._exclude = tuple(exclude)

    def build_command(self, destination: Path, source: str = "/") -> list[str]:
        """Build the rsync argument list."""
        cmd = [self._config.binary, *RSYNC_OPTIONS]
        cmd += [f"--exclude={pattern}" for pattern in self._exclude]
        cmd += self._config.extra_args
        cmd += [source, str(destination)]
        return cmd

    async def run(self, destination: Path, source: str = "/") -> int:
        """Copy source into destination and wait for rsync to finish.

        Returns:
            rsync exit status (0, or 24 when source files vanished)

        Raises:
            SyncError: If rsync cannot be started or fails
            asyncio.CancelledError: rsync is terminated before re-raising
        """
        cmd = self.build_command(destination, source)
        try:
            process = await self._executor.start_process(cmd)
        except OSError as e:
            raise SyncError(127, f"Cannot start {self._config.binary}: {e}") from e

        try:
            await asyncio.gather(self._pump_stdout(process), self._pump_stderr(process))
            exit_code = await process.wait()
        except asyncio.CancelledError:
            logger.warning("Copy interrupted, stopping %s", self._config.binary)
            await process.terminate()
            raise

        if exit_code == RSYNC_PARTIAL_VANISHED:
            logger.warning("Some source files vanished during the copy (rsync exit %d)", exit_code)
        elif exit_code != 0:
            raise SyncError(exit_code, f"{self._config.binary} exited with status {exit_code}")

        self._event_bus.publish(ProgressEvent(source=self.name, update=ProgressUpdate(percent=100)))
        return exit_code

    async def _pump_stdout(self, process: Process) -> None:
        async for line in process.stdout():
            update = parse_progress_line(line)
            if update is not None:
                self._event_bus.publish(ProgressEvent(source=self.name, update=update))
            else:
                logger.log(LogLevel.FULL, "%s", line.strip())

    async def _pump_stderr(self, process: Process) -> None:
        async for line in process.stderr():
            logger.warning("rsync: %s", line.strip())
