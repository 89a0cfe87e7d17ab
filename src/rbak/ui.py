"""Terminal output: copy progress, change notifications, operator prompt."""

from __future__ import annotations

import asyncio
import contextlib
import sys
from typing import Any, TextIO

from rich import filesize
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    TaskID,
    TaskProgressColumn,
    TextColumn,
)
from rich.text import Text

from rbak.events import ChangeEvent, ProgressEvent
from rbak.models import ProgressUpdate

__all__ = [
    "ABORT_ANSWERS",
    "TerminalUI",
    "wait_for_confirmation",
]

ABORT_ANSWERS = frozenset({"q", "n", "no", "abort"})


class TerminalUI:
    """Renders events from the EventBus on the console.

    - ProgressEvent → a progress bar per source (percent, bytes, rate, ETA)
    - ChangeEvent → one timestamped line per filesystem write
    """

    def __init__(self, console: Console) -> None:
        self._console = console
        self._progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("{task.fields[transferred]}", style="green"),
            TextColumn("{task.fields[rate]}", style="cyan"),
            TextColumn("ETA {task.fields[eta]}", style="dim"),
            console=console,
            expand=True,
        )
        self._tasks: dict[str, TaskID] = {}
        self._started = False
        self.change_count = 0

    def start(self) -> None:
        """Start the live progress display."""
        if not self._started:
            self._progress.start()
            self._started = True

    def stop(self) -> None:
        """Stop the live progress display. Safe to call twice."""
        if self._started:
            self._progress.stop()
            self._started = False

    def update_progress(self, source: str, update: ProgressUpdate) -> None:
        """Update the progress bar of one source."""
        if source not in self._tasks:
            self._tasks[source] = self._progress.add_task(
                f"[cyan]{source}[/cyan]",
                total=100,
                transferred="",
                rate="",
                eta="-:--:--",
            )
        task_id = self._tasks[source]

        fields: dict[str, Any] = {}
        if update.transferred is not None:
            fields["transferred"] = filesize.decimal(update.transferred)
        if update.rate is not None:
            fields["rate"] = update.rate
        if update.eta is not None:
            fields["eta"] = update.eta
        if update.percent is not None:
            fields["completed"] = update.percent
        self._progress.update(task_id, **fields)

    def show_change(self, event: ChangeEvent) -> None:
        """Print a filesystem change notification."""
        self.change_count += 1
        text = Text()
        text.append(f"{event.timestamp:%H:%M:%S} ", style="dim")
        text.append(f"{event.event_kind:<14}", style="yellow")
        text.append(f" {event.path}")
        self._console.print(text, soft_wrap=True)

    async def consume_events(self, queue: asyncio.Queue[Any]) -> None:
        """Consume events from an EventBus queue until the None sentinel."""
        while True:
            event = await queue.get()
            if event is None:  # Shutdown sentinel
                break
            if isinstance(event, ProgressEvent):
                self.update_progress(event.source, event.update)
            elif isinstance(event, ChangeEvent):
                self.show_change(event)


async def wait_for_confirmation(
    console: Console,
    prompt: str = "Press Enter to continue or Ctrl+C to abort",
    stream: TextIO | None = None,
) -> bool:
    """Wait, without timeout, for the operator to confirm.

    Reads stdin through the event loop so an interrupt cancels the wait
    immediately instead of leaving a thread blocked on input. Regular files
    and /dev/null cannot be polled; they never block, so they are read
    directly.

    Returns:
        True on Enter, False when the operator answers q/n or stdin is closed
    """
    stream = stream or sys.stdin
    console.print(prompt)

    loop = asyncio.get_running_loop()
    answer: asyncio.Future[str] = loop.create_future()

    def on_readable() -> None:
        if not answer.done():
            answer.set_result(stream.readline())

    fd = stream.fileno()
    try:
        loop.add_reader(fd, on_readable)
    except PermissionError:
        line = await asyncio.to_thread(stream.readline)
    else:
        try:
            line = await answer
        finally:
            with contextlib.suppress(ValueError, OSError):
                loop.remove_reader(fd)

    if not line:  # EOF
        return False
    return line.strip().lower() not in ABORT_ANSWERS
