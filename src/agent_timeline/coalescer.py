from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable

from agent_timeline.models import Category, TimelineEntry

logger = logging.getLogger(__name__)

COALESCE_WINDOW = 0.1

FlushHandler = Callable[[TimelineEntry], None]


@dataclass
class _Pending:
    entry: TimelineEntry
    timer: asyncio.TimerHandle


def coalesce_key(entry: TimelineEntry) -> str | None:
    if entry.category is not Category.TOKEN or not entry.part_id:
        return None
    return f"token:{entry.part_id}"


def merge_fragments(current: TimelineEntry, fragment: TimelineEntry) -> TimelineEntry:
    """Fold ``fragment`` into ``current``; identity and ordering stay with the first fragment."""
    delta = (current.delta or "") + (fragment.delta or "")
    metadata = {**(current.metadata or {}), **(fragment.metadata or {})}
    if delta:
        metadata["delta"] = delta
    return replace(
        current,
        timestamp=fragment.timestamp,
        label=fragment.label,
        metadata=metadata or None,
        source_event=fragment.source_event,
    )


class Coalescer:
    """Merge bursts of text/reasoning deltas per part into single entries.

    Entries without a coalesce key are returned from ``process`` unchanged.
    Keyed entries are held for ``window`` seconds after the latest fragment
    and then handed to the flush handler exactly once.

    Emission always follows sequence order: pending entries are kept in the
    order their first fragment arrived, a flush releases every older pending
    entry along with its own, and an unkeyed entry releases everything still
    pending before it is returned.
    """

    def __init__(self, on_flush: FlushHandler | None = None, *, window: float = COALESCE_WINDOW) -> None:
        self._on_flush = on_flush
        self.window = window
        self._pending: dict[str, _Pending] = {}

    def set_flush_handler(self, handler: FlushHandler) -> None:
        self._on_flush = handler

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def process(self, entry: TimelineEntry) -> TimelineEntry | None:
        key = coalesce_key(entry)
        if key is None:
            self.flush_all()
            return entry

        loop = asyncio.get_running_loop()
        existing = self._pending.get(key)
        if existing is not None:
            existing.timer.cancel()
            existing.entry = merge_fragments(existing.entry, entry)
            existing.timer = loop.call_later(self.window, self._flush, key)
            return None

        self._pending[key] = _Pending(entry=entry, timer=loop.call_later(self.window, self._flush, key))
        return None

    def _flush(self, key: str) -> None:
        if key not in self._pending:
            return
        for pending_key in list(self._pending):
            item = self._pending.pop(pending_key)
            item.timer.cancel()
            self._emit(item.entry)
            if pending_key == key:
                break

    def flush_all(self) -> None:
        pending, self._pending = self._pending, {}
        for item in pending.values():
            item.timer.cancel()
            self._emit(item.entry)

    def _emit(self, entry: TimelineEntry) -> None:
        if self._on_flush is None:
            logger.warning("dropping coalesced entry %s: no flush handler", entry.id)
            return
        self._on_flush(entry)
