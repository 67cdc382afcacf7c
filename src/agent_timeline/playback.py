from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from agent_timeline.models import TimelineEntry, TimelineMode
from agent_timeline.store import TimelineStore

logger = logging.getLogger(__name__)

SPEEDS: tuple[float, ...] = (0.25, 0.5, 1, 2, 4)
MIN_STEP_MS = 16
MAX_STEP_MS = 2000
FALLBACK_STEP_MS = 100


def step_delay_ms(current: TimelineEntry | None, following: TimelineEntry | None, speed: float) -> float:
    """Milliseconds to wait after moving from ``current`` to ``following``."""
    if current is None or following is None:
        return FALLBACK_STEP_MS / speed
    gap = following.timestamp - current.timestamp
    return max(MIN_STEP_MS, min(MAX_STEP_MS, gap / speed))


class PlaybackEngine:
    """Advance the store cursor through history while the mode is ``playing``.

    The engine watches the store and starts a task when the mode switches to
    ``playing``; leaving that mode cancels the task, including a pending
    sleep, so no stale advance fires afterwards. When the cursor reaches the
    last entry playback hands over to ``live`` if the connection is up and
    to ``paused`` otherwise.
    """

    def __init__(
        self,
        store: TimelineStore,
        is_connected: Callable[[], bool] = lambda: False,
        *,
        speed: float = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self._is_connected = is_connected
        self._speed = self._validate(speed)
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._unsubscribe = store.subscribe(self._on_store_change)

    @staticmethod
    def _validate(speed: float) -> float:
        if speed not in SPEEDS:
            raise ValueError(f"Unsupported playback speed {speed}; choose one of {', '.join(map(str, SPEEDS))}")
        return speed

    @property
    def speed(self) -> float:
        return self._speed

    @speed.setter
    def speed(self, value: float) -> None:
        self._speed = self._validate(value)

    def faster(self) -> float:
        index = SPEEDS.index(self._speed)
        self._speed = SPEEDS[min(index + 1, len(SPEEDS) - 1)]
        return self._speed

    def slower(self) -> float:
        index = SPEEDS.index(self._speed)
        self._speed = SPEEDS[max(index - 1, 0)]
        return self._speed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _on_store_change(self, store: TimelineStore) -> None:
        if store.mode is TimelineMode.PLAYING:
            if not self.running:
                self._task = asyncio.get_running_loop().create_task(self._run(), name="playback")
        elif self.running and self._task is not asyncio.current_task():
            self.stop()

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    def close(self) -> None:
        self.stop()
        self._unsubscribe()

    async def _run(self) -> None:
        while self.store.mode is TimelineMode.PLAYING:
            entries = self.store.entries
            cursor = self.store.cursor
            if cursor >= len(entries) - 1:
                self.store.set_mode(TimelineMode.LIVE if self._is_connected() else TimelineMode.PAUSED)
                return

            self.store.set_cursor(cursor + 1)
            delay = step_delay_ms(entries[cursor], entries[cursor + 1], self._speed)
            logger.debug("playback at %d, next step in %.0fms", cursor + 1, delay)
            await self._sleep(delay / 1000)
