from __future__ import annotations

import pytest

from agent_timeline.models import Actor, Category, TimelineEntry, TimelineMode
from agent_timeline.store import TimelineStore
from agent_timeline.views import TimelineView, compute_stats


def _entry(
    seq: int,
    session_id: str = "s1",
    *,
    category: Category = Category.CONTROL,
    label: str = "",
    from_actor: Actor = Actor.AGENT,
    to_actor: Actor = Actor.LLM,
    short_label: str = "E",
    metadata: dict | None = None,
    ts: int | None = None,
) -> TimelineEntry:
    return TimelineEntry(
        id=f"evt-{seq}",
        timestamp=seq * 100 if ts is None else ts,
        sequence_index=seq,
        source_event=None,
        from_actor=from_actor,
        to_actor=to_actor,
        label=label or f"Entry {seq}",
        short_label=short_label,
        category=category,
        session_id=session_id,
        metadata=metadata,
    )


def _view(entries: list[TimelineEntry]) -> TimelineView:
    store = TimelineStore()
    store.append_batch(entries)
    return TimelineView(store)


def test_session_filter_compares_sequence_positions() -> None:
    a, b, c = _entry(0, "s1"), _entry(1, "s2"), _entry(2, "s1")
    view = _view([a, b, c])
    view.store.set_mode(TimelineMode.PAUSED)
    view.store.set_cursor(1)
    view.set_filters(session_id="s1")
    assert view.filtered_entries == [a, c]
    assert view.visible_entries == [a]
    assert view.current_entry is a


def test_visible_without_filters_follows_cursor() -> None:
    entries = [_entry(i) for i in range(5)]
    view = _view(entries)
    view.store.set_mode(TimelineMode.PAUSED)
    view.store.set_cursor(2)
    assert view.visible_entries == entries[:3]


def test_projection_refreshes_after_store_change() -> None:
    view = _view([_entry(0)])
    assert len(view.visible_entries) == 1
    view.store.append(_entry(1))
    assert len(view.visible_entries) == 2


def test_category_actor_and_tool_filters() -> None:
    tool = _entry(0, category=Category.TOOL, from_actor=Actor.AGENT, to_actor=Actor.TOOL, metadata={"tool_name": "bash"})
    other_tool = _entry(1, category=Category.TOOL, from_actor=Actor.AGENT, to_actor=Actor.TOOL, metadata={"tool_name": "read"})
    message = _entry(2, category=Category.MESSAGE, from_actor=Actor.USER, to_actor=Actor.SYSTEM)
    view = _view([tool, other_tool, message])

    view.set_filters(category="tool")
    assert view.filtered_entries == [tool, other_tool]
    view.set_filters(tool_name="bash")
    assert view.filtered_entries == [tool]
    view.clear_filters()
    view.set_filters(actor=Actor.USER)
    assert view.filtered_entries == [message]


def test_search_matches_label_tool_and_error() -> None:
    labelled = _entry(0, label="Call: grep")
    errored = _entry(1, metadata={"error": "Disk Full"})
    plain = _entry(2)
    view = _view([labelled, errored, plain])
    view.set_filters(search="GREP")
    assert view.filtered_entries == [labelled]
    view.set_filters(search="disk")
    assert view.filtered_entries == [errored]
    view.set_filters(search="   ")
    assert len(view.filtered_entries) == 3
    assert not view.filters.active


def test_unknown_filter_raises() -> None:
    view = _view([])
    with pytest.raises(AttributeError):
        view.set_filters(colour="red")


def test_invalid_category_raises() -> None:
    view = _view([])
    with pytest.raises(ValueError):
        view.set_filters(category="nonsense")


def test_empty_store_with_session_filter() -> None:
    view = _view([])
    view.set_filters(session_id="s1")
    assert view.visible_entries == []
    assert view.current_entry is None


def test_recent_edges_and_active_actors() -> None:
    entries = [_entry(i) for i in range(10)]
    entries[-1] = _entry(9, from_actor=Actor.TOOL, to_actor=Actor.USER)
    view = _view(entries)
    assert len(view.recent_edges) == 8
    assert view.active_actors == {Actor.AGENT, Actor.LLM, Actor.TOOL, Actor.USER}


def test_session_ids_and_tool_names() -> None:
    view = _view(
        [
            _entry(0, "s2", metadata={"tool_name": "read"}),
            _entry(1, "s1", metadata={"tool_name": "bash"}),
            _entry(2, "s2", metadata={"tool_name": "read"}),
        ]
    )
    assert view.session_ids == ["s2", "s1"]
    assert view.tool_names == ["bash", "read"]


def test_version_changes_with_filters_and_store() -> None:
    view = _view([_entry(0)])
    before = view.version
    view.set_filters(search="x")
    after_filter = view.version
    view.store.append(_entry(1))
    assert len({before, after_filter, view.version}) == 3


def test_compute_stats() -> None:
    entries = [
        _entry(0, category=Category.MESSAGE, from_actor=Actor.USER, to_actor=Actor.SYSTEM, ts=1_000),
        _entry(1, category=Category.TOOL, metadata={"tool_name": "bash", "duration": 200}, ts=1_100),
        _entry(2, category=Category.TOOL, metadata={"tool_name": "bash", "duration": 400}, ts=1_200),
        _entry(3, category=Category.TOOL, metadata={"tool_name": "read"}, ts=1_300),
        _entry(
            4,
            from_actor=Actor.LLM,
            to_actor=Actor.AGENT,
            short_label="←Step",
            metadata={"tokens": {"input": 10, "output": 5, "reasoning": 2}, "cost": 0.25},
            ts=1_400,
        ),
        _entry(5, category=Category.ERROR, metadata={"error": "boom"}, ts=3_000),
    ]
    stats = compute_stats(entries)
    assert stats.total_events == 6
    assert stats.duration == 2_000
    assert (stats.tokens_in, stats.tokens_out, stats.tokens_reasoning) == (10, 5, 2)
    assert stats.total_tokens == 17
    assert stats.total_cost == pytest.approx(0.25)
    assert stats.llm_steps == 1
    assert stats.error_count == 1
    assert stats.category_counts[Category.TOOL] == 3
    assert stats.actor_counts[Actor.USER] == 1
    assert [(tool.name, tool.count) for tool in stats.tools] == [("bash", 2), ("read", 1)]
    assert stats.tools[0].avg_duration == 300


def test_stats_follow_visible_entries() -> None:
    view = _view([_entry(i, category=Category.ERROR) for i in range(4)])
    view.store.set_mode(TimelineMode.PAUSED)
    view.store.set_cursor(1)
    assert view.stats().error_count == 2


def test_stats_of_nothing() -> None:
    stats = compute_stats([])
    assert stats.total_events == 0
    assert stats.duration == 0
    assert stats.tools == []
