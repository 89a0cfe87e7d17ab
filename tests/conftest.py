"""Shared test fixtures for rbak tests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from rbak.config import Configuration
from rbak.events import EventBus
from rbak.models import CommandResult


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging() -> None:
    """Show rbak logs in live logging while keeping libraries quiet."""
    logging.getLogger().setLevel(logging.WARNING)
    logging.getLogger("rbak").setLevel(logging.DEBUG)


class FakeProcess:
    """In-memory stand-in for a streaming child process.

    With block=True, stdout never ends until the reading task is cancelled,
    like rsync in the middle of a long copy.
    """

    def __init__(
        self,
        stdout_lines: Sequence[str] = (),
        stderr_lines: Sequence[str] = (),
        exit_code: int = 0,
        pid: int = 4242,
        block: bool = False,
    ) -> None:
        self._stdout_lines = list(stdout_lines)
        self._stderr_lines = list(stderr_lines)
        self._exit_code = exit_code
        self._pid = pid
        self._block = block
        self.terminated = False

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def returncode(self) -> int | None:
        return None if not self.terminated and self._block else self._exit_code

    async def stdout(self) -> AsyncIterator[str]:
        for line in self._stdout_lines:
            yield line
        if self._block:
            await asyncio.Event().wait()

    async def stderr(self) -> AsyncIterator[str]:
        for line in self._stderr_lines:
            yield line

    async def wait(self) -> int:
        return self._exit_code

    async def terminate(self) -> None:
        self.terminated = True


@pytest.fixture
def mock_executor() -> MagicMock:
    """Create a mock executor whose commands all succeed."""
    executor = MagicMock()
    executor.run_command = AsyncMock(return_value=CommandResult(exit_code=0, stdout="", stderr=""))
    executor.start_process = AsyncMock(return_value=FakeProcess())
    executor.terminate_all_processes = AsyncMock()
    return executor


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def base_path(tmp_path: Path) -> Path:
    """Base name of the backup directories inside tmp_path."""
    return tmp_path / "backup" / "testhost.rbak"


@pytest.fixture
def target_dir(base_path: Path) -> Path:
    """An existing backup directory for suffix "1"."""
    path = Path(f"{base_path}.1")
    path.mkdir(parents=True)
    return path


@pytest.fixture
def affirmed_config(base_path: Path) -> Configuration:
    """Affirmed configuration pointing at base_path."""
    return Configuration(
        configuration_affirmed=True,
        base_path=str(base_path),
        halt_users=("alice", "bob"),
        halt_services=("postgresql.service", "docker.service"),
    )


def drain(queue: asyncio.Queue[object]) -> list[object]:
    """Return everything currently in an EventBus queue."""
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items
