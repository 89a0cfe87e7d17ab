"""Event bus decoupling the sync engine and change observer from the UI.

Log messages do not travel over the bus; modules use
``logging.getLogger(__name__)``. The bus carries the high-frequency streams
the terminal UI renders: copy progress and filesystem change notifications.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from rbak.models import ProgressUpdate

__all__ = [
    "ChangeEvent",
    "EventBus",
    "ProgressEvent",
]


@dataclass(frozen=True)
class ProgressEvent:
    """Copy progress of one source, rendered as a progress bar."""

    source: str  # e.g. "rsync"
    update: ProgressUpdate
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ChangeEvent:
    """A filesystem write reported by the change observer."""

    path: str
    event_kind: str  # inotify event names, e.g. "MODIFY" or "CREATE,ISDIR"
    timestamp: datetime = field(default_factory=datetime.now)


type Event = ProgressEvent | ChangeEvent


class EventBus:
    """Fan-out of progress and change events to the terminal UI.

    Every subscriber owns an unbounded queue, so the rsync pump never waits on
    a slow renderer.
    """

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue[Event | None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> asyncio.Queue[Event | None]:
        """Register a consumer; it sees events published from now on, then None."""
        queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def publish(self, event: Event) -> None:
        """Queue event for every subscriber. Ignored once closed."""
        if not self._closed:
            for queue in self._queues:
                queue.put_nowait(event)

    def close(self) -> None:
        """End every subscription with a None sentinel. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(None)
