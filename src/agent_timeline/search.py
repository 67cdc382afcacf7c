from __future__ import annotations

import shutil
from pathlib import Path

from agent_timeline.recording import FileRecordingSink


def _schema():
    from tantivy import SchemaBuilder

    return (
        SchemaBuilder()
        .add_text_field("recording_id", stored=True)
        .add_text_field("sessions", stored=True)
        .add_text_field("content")
        .add_integer_field("start_time", stored=True)
        .add_integer_field("event_count", stored=True)
        .build()
    )


def _index_dir(root: Path) -> Path:
    return root / "search-index"


def _latest_change(sink: FileRecordingSink) -> float:
    if not sink.recordings_dir.exists():
        return 0.0
    stamps = [sink.recordings_dir.stat().st_mtime]
    stamps.extend(path.stat().st_mtime for path in sink.recordings_dir.glob("*/meta.json"))
    return max(stamps)


def ensure_index(root: Path) -> bool:
    """Rebuild the index when any recording changed since it was built.

    Returns True when the index was (re)built.
    """
    sink = FileRecordingSink(root)
    search_dir = _index_dir(root)
    metas = sink.list_recordings()
    if not metas:
        if search_dir.exists():
            shutil.rmtree(search_dir)
        return False
    if search_dir.exists() and _latest_change(sink) <= search_dir.stat().st_mtime:
        return False
    if search_dir.exists():
        shutil.rmtree(search_dir)
    search_dir.mkdir(parents=True)
    from tantivy import Document, Index

    index = Index(schema=_schema(), path=str(search_dir))
    writer = index.writer(heap_size=15_000_000, num_threads=1)
    for meta in metas:
        parts: list[str] = []
        for entry in sink.load_recording_events(meta.id):
            parts.append(entry.label)
            if entry.tool_name:
                parts.append(entry.tool_name)
            if entry.error:
                parts.append(entry.error)
        doc = Document()
        doc.add_text("recording_id", meta.id)
        doc.add_text("sessions", " ".join(meta.session_ids))
        doc.add_text("content", "\n".join(parts))
        doc.add_integer("start_time", meta.start_time)
        doc.add_integer("event_count", meta.event_count)
        writer.add_document(doc)
    writer.commit()
    index.reload()
    return True


def query_index(root: Path, q: str, limit: int = 20) -> list[dict]:
    from tantivy import Index

    search_dir = _index_dir(root)
    if not search_dir.exists() or not q.strip():
        return []
    index = Index(schema=_schema(), path=str(search_dir))
    index.reload()
    searcher = index.searcher()
    try:
        query = index.parse_query(q, ["content", "sessions", "recording_id"])
    except ValueError:
        return []
    out = []
    for score, doc_address in searcher.search(query, limit).hits:
        doc = searcher.doc(doc_address)

        def _v(name: str, default=""):
            try:
                vals = doc[name]
                return vals[0] if vals else default
            except (KeyError, IndexError):
                return default

        out.append(
            {
                "recording_id": _v("recording_id"),
                "sessions": _v("sessions").split(),
                "start_time": _v("start_time", 0),
                "event_count": _v("event_count", 0),
                "score": score,
            }
        )
    return out
