"""Command execution on the local machine."""

from __future__ import annotations

import asyncio
import contextlib
import re
import shlex
from collections.abc import AsyncIterator, Sequence
from typing import Protocol

from rbak.models import CommandResult

__all__ = [
    "Executor",
    "LocalExecutor",
    "LocalProcess",
    "Process",
    "format_command",
    "iter_lines",
]

# rsync redraws its progress line with carriage returns
_LINE_BREAK = re.compile(rb"\r\n|\r|\n")
_READ_CHUNK = 4096


class Executor(Protocol):
    """Protocol for command execution.

    Collaborators take an Executor so tests can substitute a mock.
    """

    async def run_command(
        self,
        cmd: Sequence[str],
        timeout: float | None = None,
    ) -> CommandResult:
        """Run cmd to completion and capture its output."""
        ...

    async def start_process(self, cmd: Sequence[str]) -> Process:
        """Start a long-running process with streaming output."""
        ...

    async def terminate_all_processes(self) -> None:
        """Stop every process started through start_process."""
        ...


class Process(Protocol):
    """Handle for a running process with streaming output.

    Note: stdin is intentionally not supported. rbak reads operator input
    itself; child tools never prompt.
    """

    @property
    def pid(self) -> int:
        """Process id of the child."""
        ...

    @property
    def returncode(self) -> int | None:
        """Exit status, or None while running."""
        ...

    def stdout(self) -> AsyncIterator[str]:
        """Iterate over stdout lines as they arrive."""
        ...

    def stderr(self) -> AsyncIterator[str]:
        """Iterate over stderr lines as they arrive."""
        ...

    async def wait(self) -> int:
        """Wait for process to complete and return its exit status."""
        ...

    async def terminate(self) -> None:
        """Terminate the process."""
        ...


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield decoded lines split on LF, CR or CRLF.

    Empty lines are skipped. A trailing partial line is yielded at EOF.
    """
    buffer = b""
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        buffer += chunk
        parts = _LINE_BREAK.split(buffer)
        buffer = parts.pop()
        for part in parts:
            if part:
                yield part.decode(errors="replace")
    if buffer:
        yield buffer.decode(errors="replace")


class LocalProcess:
    """Process backed by an asyncio subprocess."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def stdout(self) -> AsyncIterator[str]:
        """Iterate over stdout lines as they arrive."""
        if self._proc.stdout is None:
            return
        async for line in iter_lines(self._proc.stdout):
            yield line

    async def stderr(self) -> AsyncIterator[str]:
        """Iterate over stderr lines as they arrive."""
        if self._proc.stderr is None:
            return
        async for line in iter_lines(self._proc.stderr):
            yield line

    async def wait(self) -> int:
        """Wait for process to complete and return its exit status."""
        return await self._proc.wait()

    async def terminate(self) -> None:
        """Terminate the process. Does nothing if it already exited."""
        if self._proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()
        await self._proc.wait()


class LocalExecutor:
    """Executes commands on the local machine via async subprocess.

    Commands are argument lists; no shell is involved.
    """

    def __init__(self) -> None:
        self._processes: list[asyncio.subprocess.Process] = []

    async def run_command(
        self,
        cmd: Sequence[str],
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command and wait for completion.

        Args:
            cmd: Program and arguments
            timeout: Optional timeout in seconds

        Returns:
            CommandResult with exit code, stdout, and stderr. A program that
            cannot be started is reported as exit code 127.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            return CommandResult(exit_code=127, stdout="", stderr=str(e))
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=timeout,
            )
            return CommandResult(
                exit_code=proc.returncode or 0,
                stdout=stdout.decode() if stdout else "",
                stderr=stderr.decode() if stderr else "",
            )
        except TimeoutError:
            proc.terminate()
            await proc.wait()
            raise

    async def start_process(self, cmd: Sequence[str]) -> LocalProcess:
        """Start a streaming child with stdin closed.

        Args:
            cmd: Program and arguments

        Returns:
            Handle for reading its output and stopping it
        """
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._processes.append(proc)
        return LocalProcess(proc)

    async def terminate_all_processes(self) -> None:
        """SIGTERM every tracked child that is still running and reap it."""
        for proc in self._processes:
            if proc.returncode is None:  # Still running
                with contextlib.suppress(ProcessLookupError):
                    proc.terminate()
        await asyncio.gather(
            *(proc.wait() for proc in self._processes if proc.returncode is None),
            return_exceptions=True,
        )
        self._processes.clear()


def format_command(cmd: Sequence[str]) -> str:
    """Render an argument list as a copy-pasteable shell command."""
    return shlex.join(cmd)
