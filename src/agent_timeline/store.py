from __future__ import annotations

import logging
from typing import Callable, Iterable, Sequence

from agent_timeline.models import TimelineEntry, TimelineMode

logger = logging.getLogger(__name__)

SNAPSHOT_INTERVAL = 100

Listener = Callable[["TimelineStore"], None]


class TimelineStore:
    """Append-only entry log with a cursor and a playback mode.

    The setters here are the only way to change ``entries``, ``cursor`` or
    ``mode``. Listeners run synchronously after every mutation, so anything
    derived from the store is recomputed before control returns to the
    caller. All mutations happen on one asyncio event loop.
    """

    def __init__(self) -> None:
        self._entries: list[TimelineEntry] = []
        self._cursor = 0
        self._mode = TimelineMode.LIVE
        self._snapshots: dict[int, int] = {}
        self._listeners: list[Listener] = []
        self.version = 0

    @property
    def entries(self) -> Sequence[TimelineEntry]:
        return self._entries

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def mode(self) -> TimelineMode:
        return self._mode

    @property
    def snapshots(self) -> dict[int, int]:
        return dict(self._snapshots)

    @property
    def last_index(self) -> int:
        return max(0, len(self._entries) - 1)

    def __len__(self) -> int:
        return len(self._entries)

    def current(self) -> TimelineEntry | None:
        if not self._entries:
            return None
        return self._entries[self._cursor]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self) -> None:
        self.version += 1
        for listener in list(self._listeners):
            listener(self)

    def _record_snapshot(self, index: int) -> None:
        if index % SNAPSHOT_INTERVAL == 0:
            self._snapshots[index // SNAPSHOT_INTERVAL] = index

    def append(self, entry: TimelineEntry) -> None:
        self._entries.append(entry)
        index = len(self._entries) - 1
        self._record_snapshot(index)
        if self._mode is TimelineMode.LIVE:
            self._cursor = index
        self._changed()

    def append_batch(self, entries: Iterable[TimelineEntry]) -> None:
        start = len(self._entries)
        self._entries.extend(entries)
        if len(self._entries) == start:
            return
        for index in range(start, len(self._entries)):
            self._record_snapshot(index)
        if self._mode is TimelineMode.LIVE:
            self._cursor = len(self._entries) - 1
        self._changed()

    def set_cursor(self, index: int) -> None:
        self._cursor = max(0, min(index, self.last_index))
        self._changed()

    def set_mode(self, mode: TimelineMode) -> None:
        self._mode = TimelineMode(mode)
        if self._mode is TimelineMode.LIVE:
            self._cursor = self.last_index
        self._changed()

    def clear(self) -> None:
        self._entries = []
        self._cursor = 0
        self._mode = TimelineMode.LIVE
        self._snapshots = {}
        logger.debug("timeline cleared")
        self._changed()
