from __future__ import annotations

import os
import time
from pathlib import Path

from agent_timeline.models import Actor, Category, TimelineEntry
from agent_timeline.recording import FileRecordingSink
from agent_timeline.search import ensure_index, query_index


def _tool_entry(seq: int, tool: str, session_id: str, error: str | None = None) -> TimelineEntry:
    metadata = {"tool_name": tool}
    if error:
        metadata["error"] = error
    return TimelineEntry(
        id=f"evt-{seq}",
        timestamp=1_000 + seq,
        sequence_index=seq,
        source_event=None,
        from_actor=Actor.TOOL,
        to_actor=Actor.AGENT,
        label=f"Result: {tool}",
        short_label=tool,
        category=Category.ERROR if error else Category.TOOL,
        session_id=session_id,
        metadata=metadata,
    )


def _record(sink: FileRecordingSink, *entries: TimelineEntry) -> str:
    recording_id = sink.create_recording()
    for entry in entries:
        sink.append_event(recording_id, entry)
    sink.finalize_recording(recording_id)
    return recording_id


def test_search_finds_recordings_by_tool_and_error(tmp_path: Path) -> None:
    sink = FileRecordingSink(tmp_path)
    grep_id = _record(sink, _tool_entry(0, "grep", "ses_alpha"))
    write_id = _record(sink, _tool_entry(0, "write", "ses_beta", error="permission denied"))

    assert ensure_index(tmp_path) is True
    assert [hit["recording_id"] for hit in query_index(tmp_path, "grep")] == [grep_id]
    hits = query_index(tmp_path, "permission")
    assert [hit["recording_id"] for hit in hits] == [write_id]
    assert hits[0]["sessions"] == ["ses_beta"]
    assert hits[0]["event_count"] == 1


def test_index_is_reused_until_a_recording_changes(tmp_path: Path) -> None:
    sink = FileRecordingSink(tmp_path)
    _record(sink, _tool_entry(0, "grep", "s1"))
    assert ensure_index(tmp_path) is True
    assert ensure_index(tmp_path) is False

    later = time.time() + 5
    new_id = _record(sink, _tool_entry(0, "webfetch", "s2"))
    os.utime(tmp_path / "recordings" / new_id / "meta.json", (later, later))
    assert ensure_index(tmp_path) is True
    assert [hit["recording_id"] for hit in query_index(tmp_path, "webfetch")] == [new_id]


def test_empty_and_invalid_queries(tmp_path: Path) -> None:
    assert ensure_index(tmp_path) is False
    assert query_index(tmp_path, "grep") == []

    _record(FileRecordingSink(tmp_path), _tool_entry(0, "grep", "s1"))
    ensure_index(tmp_path)
    assert query_index(tmp_path, "   ") == []
    assert query_index(tmp_path, "label:(((") == []
