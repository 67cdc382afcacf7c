from __future__ import annotations

import asyncio
import json
import logging

from rapidfuzz import fuzz, process
from textual import work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import Input, Label, ListItem, ListView, Static

from agent_timeline.controller import TimelineController
from agent_timeline.models import Actor, Category, TimelineEntry
from agent_timeline.recording import RecordingSink
from agent_timeline.render import format_entry

logger = logging.getLogger(__name__)

MAX_ROWS = 300
FUZZY_CUTOFF = 60


def parse_filter_query(query: str, tool_names: list[str]) -> dict:
    """Turn the search box text into view filters.

    ``tool:``, ``cat:``, ``actor:`` and ``session:`` tokens set the matching
    filter; everything else is free text. Tool names are matched fuzzily
    against the tools seen so far.
    """
    filters: dict = {"session_id": None, "category": None, "actor": None, "tool_name": None}
    words: list[str] = []
    for token in query.split():
        prefix, sep, value = token.partition(":")
        if not sep or not value:
            words.append(token)
            continue
        prefix = prefix.lower()
        if prefix == "tool":
            best = process.extractOne(value, tool_names, scorer=fuzz.WRatio, score_cutoff=FUZZY_CUTOFF)
            filters["tool_name"] = best[0] if best else value
        elif prefix in ("cat", "category"):
            try:
                filters["category"] = Category(value.lower())
            except ValueError:
                logger.debug("ignoring unknown category %r", value)
        elif prefix == "actor":
            try:
                filters["actor"] = Actor(value.lower())
            except ValueError:
                logger.debug("ignoring unknown actor %r", value)
        elif prefix == "session":
            filters["session_id"] = value
        else:
            words.append(token)
    filters["search"] = " ".join(words)
    return filters


def _format_detail(entry: TimelineEntry | None) -> str:
    if entry is None:
        return "No entry at the cursor."
    lines = [
        f"#{entry.sequence_index} {entry.label}",
        f"session {entry.session_id}  message {entry.message_id or '-'}  part {entry.part_id or '-'}",
    ]
    if entry.metadata:
        lines.append(json.dumps(entry.metadata, indent=2, ensure_ascii=False, default=str))
    return "\n".join(lines)


class TimelineApp(App[None]):
    CSS_PATH = "timeline.tcss"

    BINDINGS = [
        Binding("space", "toggle_play", "Play/Pause"),
        Binding("left", "step(-1)", "Back", show=False),
        Binding("right", "step(1)", "Forward", show=False),
        Binding("shift+left", "step(-10)", "Back 10", show=False),
        Binding("shift+right", "step(10)", "Forward 10", show=False),
        Binding("home", "jump_start", "Start", show=False),
        Binding("end", "jump_end", "End", show=False),
        Binding("plus,equals_sign", "faster", "Faster"),
        Binding("minus", "slower", "Slower"),
        Binding("escape", "clear_search", "Clear filters"),
        Binding("slash", "focus_search", "Search", show=False),
        Binding("q", "quit", "Quit"),
    ]

    def __init__(
        self,
        controller: TimelineController,
        *,
        live: bool = True,
        sink: RecordingSink | None = None,
        recording_id: str | None = None,
    ) -> None:
        super().__init__()
        self.controller = controller
        self.live = live
        self.sink = sink
        self.recording_id = recording_id
        self._rendered: tuple | None = None

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Input(placeholder="Filter... (tool: cat: actor: session:)", id="search")
            yield ListView(id="entries")
            yield Static("", id="detail")
            yield Static("", id="status")

    async def on_mount(self) -> None:
        if self.live:
            self.controller.connect()
        elif self.sink is not None and self.recording_id is not None:
            await self.controller.load_recording(self.sink, self.recording_id)
            self.controller.play()
        self.set_interval(0.1, self._refresh_if_changed)
        self.query_one("#entries", ListView).focus()

    async def on_unmount(self) -> None:
        await self.controller.close()

    def _refresh_if_changed(self) -> None:
        conn = self.controller.connection
        key = (self.controller.view.version, conn.state, conn.detail, self.controller.playback.speed)
        if key == self._rendered:
            return
        self._rendered = key
        self._refresh_list()
        self._refresh_status()

    def _refresh_list(self) -> None:
        visible = self.controller.view.visible_entries[-MAX_ROWS:]
        lst = self.query_one("#entries", ListView)
        lst.clear()
        for entry in visible:
            lst.append(ListItem(Label(format_entry(entry))))
        if visible:
            lst.index = len(visible) - 1
        self.query_one("#detail", Static).update(_format_detail(self.controller.view.current_entry))

    def _refresh_status(self) -> None:
        store = self.controller.store
        conn = self.controller.connection
        parts = [conn.state.value + (f" ({conn.detail})" if conn.detail else "")]
        parts.append(store.mode.value)
        parts.append(f"{self.controller.playback.speed}x")
        position = store.cursor + 1 if len(store) else 0
        parts.append(f"{position}/{len(store)}")
        if self.controller.view.filters.active:
            parts.append(f"{len(self.controller.view.visible_entries)} shown")
        if self.controller.recording_id:
            parts.append(f"rec {self.controller.recording_id}")
        elif self.recording_id:
            parts.append(f"replay {self.recording_id}")
        self.query_one("#status", Static).update(" │ ".join(parts))

    @work(exclusive=True)
    async def _apply_filter(self, query: str) -> None:
        # Debounce: a newer keystroke cancels this worker before it filters.
        await asyncio.sleep(0.08)
        filters = parse_filter_query(query, self.controller.view.tool_names)
        self.controller.view.set_filters(**filters)
        self._refresh_if_changed()

    def on_input_changed(self, event: Input.Changed) -> None:
        self._apply_filter(event.value)

    def action_toggle_play(self) -> None:
        self.controller.toggle_play()

    def action_step(self, delta: int) -> None:
        self.controller.step(delta)

    def action_jump_start(self) -> None:
        self.controller.jump_start()

    def action_jump_end(self) -> None:
        self.controller.jump_end()

    def action_faster(self) -> None:
        self.controller.playback.faster()

    def action_slower(self) -> None:
        self.controller.playback.slower()

    def action_focus_search(self) -> None:
        self.query_one("#search", Input).focus()

    def action_clear_search(self) -> None:
        self.query_one("#search", Input).value = ""
        self.controller.view.clear_filters()
        self.query_one("#entries", ListView).focus()
