from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from agent_timeline.connection import ConnectionConfig, ConnectionManager, ConnectionState, DEFAULT_SERVER_URL
from agent_timeline.models import TimelineEntry, TimelineMode
from agent_timeline.playback import PlaybackEngine
from agent_timeline.recording import Recorder, RecordingSink
from agent_timeline.store import TimelineStore
from agent_timeline.views import TimelineView

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState, str], None]


class TimelineController:
    """Wires connection -> store -> view, playback and recording together.

    Consumers read ``store`` and ``view`` and go through the methods here for
    anything that changes the timeline.
    """

    def __init__(
        self,
        server_url: str = DEFAULT_SERVER_URL,
        *,
        sink: RecordingSink | None = None,
        config: ConnectionConfig | None = None,
        speed: float = 1,
        on_raw_event: Callable[[Any, str], None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = TimelineStore()
        self.view = TimelineView(self.store)
        self.recorder = Recorder(sink) if sink is not None else None
        self.connection = ConnectionManager(
            server_url,
            self._on_entry,
            on_state_change=self._on_state_change,
            on_raw_event=on_raw_event,
            config=config,
            transport=transport,
        )
        self.playback = PlaybackEngine(self.store, self.is_connected, speed=speed)
        self._state_listeners: list[StateListener] = []

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.state

    @property
    def recording_id(self) -> str | None:
        return self.recorder.recording_id if self.recorder else None

    def is_connected(self) -> bool:
        return self.connection.state is ConnectionState.CONNECTED

    def on_connection_state(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _on_entry(self, entry: TimelineEntry) -> None:
        self.store.append(entry)
        if self.recorder is not None:
            self.recorder.on_entry(entry)

    def _on_state_change(self, state: ConnectionState, detail: str) -> None:
        logger.debug("connection %s %s", state.value, detail)
        if self.recorder is not None:
            self.recorder.on_state_change(state, detail)
        for listener in list(self._state_listeners):
            listener(state, detail)

    def connect(self) -> None:
        self.connection.connect()

    async def disconnect(self) -> None:
        # Stop playback first so no scheduled advance lands after we return.
        self.playback.stop()
        if self.store.mode is TimelineMode.PLAYING:
            self.store.set_mode(TimelineMode.PAUSED)
        await self.connection.disconnect()

    async def load_recording(self, sink: RecordingSink, recording_id: str) -> int:
        events = sink.load_recording_events(recording_id)
        await self.disconnect()
        self.store.clear()
        self.store.set_mode(TimelineMode.PAUSED)
        self.store.append_batch(events)
        self.store.set_cursor(0)
        logger.info("loaded recording %s (%d events)", recording_id, len(events))
        return len(events)

    def toggle_play(self) -> TimelineMode:
        mode = self.store.mode
        if mode is TimelineMode.LIVE:
            self.store.set_mode(TimelineMode.PAUSED)
        elif mode is TimelineMode.PAUSED:
            self.store.set_mode(TimelineMode.LIVE if self.is_connected() else TimelineMode.PLAYING)
        else:
            self.store.set_mode(TimelineMode.PAUSED)
        return self.store.mode

    def play(self) -> None:
        self.store.set_mode(TimelineMode.PLAYING)

    def step(self, delta: int) -> None:
        if self.store.mode is not TimelineMode.PAUSED:
            self.store.set_mode(TimelineMode.PAUSED)
        self.store.set_cursor(self.store.cursor + delta)

    def jump_start(self) -> None:
        if self.store.mode is not TimelineMode.PAUSED:
            self.store.set_mode(TimelineMode.PAUSED)
        self.store.set_cursor(0)

    def jump_end(self) -> None:
        self.store.set_cursor(self.store.last_index)
        if self.is_connected():
            self.store.set_mode(TimelineMode.LIVE)

    async def close(self) -> None:
        await self.disconnect()
        self.playback.close()
        if self.recorder is not None:
            self.recorder.finalize()
