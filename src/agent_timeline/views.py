from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from agent_timeline.models import Actor, Category, TimelineEntry
from agent_timeline.store import TimelineStore

RECENT_EDGE_COUNT = 8


@dataclass
class ViewFilters:
    session_id: str | None = None
    category: Category | None = None
    actor: Actor | None = None
    tool_name: str | None = None
    search: str = ""

    @property
    def active(self) -> bool:
        return any(
            (self.session_id, self.category, self.actor, self.tool_name, self.search.strip())
        )

    def matches(self, entry: TimelineEntry) -> bool:
        if self.session_id is not None and entry.session_id != self.session_id:
            return False
        if self.category is not None and entry.category is not self.category:
            return False
        if self.actor is not None and self.actor not in (entry.from_actor, entry.to_actor):
            return False
        if self.tool_name is not None and entry.tool_name != self.tool_name:
            return False
        query = self.search.strip().lower()
        if query:
            haystack = (entry.label, entry.short_label, entry.tool_name or "", entry.error or "")
            if not any(query in text.lower() for text in haystack):
                return False
        return True


@dataclass
class _Projection:
    filtered: list[tuple[int, TimelineEntry]]
    visible: list[TimelineEntry]


class TimelineView:
    """Filtered, cursor-aware projections of a :class:`TimelineStore`.

    Projections are recomputed on demand whenever the store version or the
    filters changed since the last read, so a reader never sees a result
    older than the latest mutation.

    Filtered entries keep their global store index. Without a session filter
    an entry is visible when that index is at or before the cursor. With a
    session filter the cursor usually points at an entry of another session,
    so visibility is decided in sequence space instead: an entry is visible
    when its ``sequence_index`` is at or before the cursor entry's.
    """

    def __init__(self, store: TimelineStore) -> None:
        self.store = store
        self._filters = ViewFilters()
        self._filter_version = 0
        self._cache_key: tuple[int, int] | None = None
        self._projection = _Projection([], [])

    @property
    def filters(self) -> ViewFilters:
        return self._filters

    @property
    def version(self) -> tuple[int, int]:
        return (self.store.version, self._filter_version)

    def set_filters(self, **changes: object) -> None:
        for name, value in changes.items():
            if not hasattr(self._filters, name):
                raise AttributeError(f"Unknown filter: {name}")
            if name == "category" and value is not None:
                value = Category(value)
            if name == "actor" and value is not None:
                value = Actor(value)
            setattr(self._filters, name, value)
        self._filter_version += 1

    def clear_filters(self) -> None:
        self._filters = ViewFilters()
        self._filter_version += 1

    def _project(self) -> _Projection:
        key = self.version
        if key == self._cache_key:
            return self._projection

        entries = self.store.entries
        cursor = self.store.cursor
        filtered = [(index, entry) for index, entry in enumerate(entries) if self._filters.matches(entry)]
        if self._filters.session_id is None:
            visible = [entry for index, entry in filtered if index <= cursor]
        elif not entries:
            visible = []
        else:
            limit = entries[cursor].sequence_index
            visible = [entry for _, entry in filtered if entry.sequence_index <= limit]

        self._projection = _Projection(filtered, visible)
        self._cache_key = key
        return self._projection

    @property
    def filtered_entries(self) -> list[TimelineEntry]:
        return [entry for _, entry in self._project().filtered]

    @property
    def visible_entries(self) -> list[TimelineEntry]:
        return list(self._project().visible)

    @property
    def current_entry(self) -> TimelineEntry | None:
        visible = self._project().visible
        return visible[-1] if visible else None

    @property
    def recent_edges(self) -> list[TimelineEntry]:
        return self._project().visible[-RECENT_EDGE_COUNT:]

    @property
    def active_actors(self) -> set[Actor]:
        actors: set[Actor] = set()
        for entry in self.recent_edges:
            actors.add(entry.from_actor)
            actors.add(entry.to_actor)
        return actors

    @property
    def session_ids(self) -> list[str]:
        return list(dict.fromkeys(entry.session_id for entry in self.store.entries if entry.session_id))

    @property
    def tool_names(self) -> list[str]:
        return sorted({entry.tool_name for entry in self.store.entries if entry.tool_name})

    def stats(self) -> "TimelineStats":
        return compute_stats(self._project().visible)


@dataclass
class ToolStats:
    name: str
    count: int = 0
    total_duration: int = 0

    @property
    def avg_duration(self) -> float:
        return self.total_duration / self.count if self.count else 0.0


@dataclass
class TimelineStats:
    total_events: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    tokens_reasoning: int = 0
    total_cost: float = 0.0
    error_count: int = 0
    llm_steps: int = 0
    duration: int = 0
    category_counts: dict[Category, int] = field(default_factory=lambda: {c: 0 for c in Category})
    actor_counts: dict[Actor, int] = field(default_factory=lambda: {a: 0 for a in Actor})
    tools: list[ToolStats] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.tokens_in + self.tokens_out + self.tokens_reasoning


def compute_stats(entries: Iterable[TimelineEntry]) -> TimelineStats:
    entries = list(entries)
    stats = TimelineStats(total_events=len(entries))
    if len(entries) > 1:
        stats.duration = entries[-1].timestamp - entries[0].timestamp

    tools: dict[str, ToolStats] = {}
    for entry in entries:
        stats.category_counts[entry.category] += 1
        stats.actor_counts[entry.from_actor] += 1
        if entry.to_actor is not entry.from_actor:
            stats.actor_counts[entry.to_actor] += 1
        if entry.category is Category.ERROR:
            stats.error_count += 1
        if entry.short_label == "←Step":
            stats.llm_steps += 1

        metadata = entry.metadata or {}
        tokens = metadata.get("tokens")
        if isinstance(tokens, dict):
            stats.tokens_in += tokens.get("input") or 0
            stats.tokens_out += tokens.get("output") or 0
            stats.tokens_reasoning += tokens.get("reasoning") or 0
        if metadata.get("cost"):
            stats.total_cost += metadata["cost"]

        name = metadata.get("tool_name")
        if name:
            tool = tools.setdefault(name, ToolStats(name))
            tool.count += 1
            tool.total_duration += metadata.get("duration") or 0

    stats.tools = sorted(tools.values(), key=lambda tool: tool.count, reverse=True)
    return stats
