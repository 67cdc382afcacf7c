"""Durable recordings of timeline entries.

A recording is created when a live connection comes up, receives every
entry delivered while it stays up, and is finalized when it drops. The
storage itself sits behind :class:`RecordingSink`; ``FileRecordingSink``
keeps one directory per recording (``meta.json`` plus an append-only
``events.jsonl``) and ``MemoryRecordingSink`` keeps everything in process.

Export format, directly re-importable::

    {"meta": {...RecordingMeta...}, "events": [...TimelineEntry...]}
"""

from __future__ import annotations

import json
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Protocol

from agent_timeline.connection import ConnectionState
from agent_timeline.models import RecordingMeta, TimelineEntry
from agent_timeline.redact import redact_value
from agent_timeline.utils import atomic_write_json, now_ms, sanitize_segment

logger = logging.getLogger(__name__)


class RecordingNotFound(KeyError):
    def __init__(self, recording_id: str) -> None:
        super().__init__(recording_id)
        self.recording_id = recording_id

    def __str__(self) -> str:
        return f"No recording with id {self.recording_id!r}"


class RecordingImportError(ValueError):
    pass


class RecordingSink(Protocol):
    def create_recording(self) -> str: ...

    def append_event(self, recording_id: str, entry: TimelineEntry) -> None: ...

    def finalize_recording(self, recording_id: str) -> None: ...

    def list_recordings(self) -> list[RecordingMeta]: ...

    def get_meta(self, recording_id: str) -> RecordingMeta: ...

    def load_recording_events(self, recording_id: str) -> list[TimelineEntry]: ...

    def delete_recording(self, recording_id: str) -> None: ...

    def export_recording(self, recording_id: str, *, redact: bool = False) -> str: ...

    def import_recording(self, blob: str | bytes) -> str: ...


def parse_recording(blob: str | bytes) -> tuple[RecordingMeta, list[TimelineEntry]]:
    try:
        data = json.loads(blob)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RecordingImportError(f"Recording is not valid JSON: {exc}") from exc
    if not isinstance(data, dict) or "meta" not in data or "events" not in data:
        raise RecordingImportError("Recording must be an object with 'meta' and 'events'")
    if not isinstance(data["events"], list):
        raise RecordingImportError("Recording 'events' must be a list")
    try:
        meta = RecordingMeta.from_dict(data["meta"])
    except ValueError as exc:
        raise RecordingImportError(str(exc)) from exc
    if sanitize_segment(meta.id) != meta.id:
        raise RecordingImportError(f"Recording id {meta.id!r} contains unsupported characters")

    events: list[TimelineEntry] = []
    for position, raw in enumerate(data["events"]):
        try:
            events.append(TimelineEntry.from_dict(raw))
        except ValueError as exc:
            raise RecordingImportError(f"Event {position} is invalid: {exc}") from exc
    events.sort(key=lambda entry: entry.sequence_index)
    for previous, entry in zip(events, events[1:]):
        if entry.sequence_index == previous.sequence_index:
            raise RecordingImportError(f"Events {previous.id!r} and {entry.id!r} share sequence_index {entry.sequence_index}")
    ids = [entry.id for entry in events]
    if len(set(ids)) != len(ids):
        raise RecordingImportError("Recording contains duplicate event ids")
    return meta, events


def serialize_recording(meta: RecordingMeta, events: list[TimelineEntry], *, redact: bool = False) -> str:
    payload: dict[str, Any] = {"meta": meta.to_dict(), "events": [entry.to_dict() for entry in events]}
    if redact:
        payload = redact_value(payload)
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def _record_entry(meta: RecordingMeta, entry: TimelineEntry) -> None:
    meta.event_count += 1
    meta.end_time = entry.timestamp
    if entry.session_id and entry.session_id not in meta.session_ids:
        meta.session_ids.append(entry.session_id)


class _SinkBase(ABC):
    """Id allocation, export and import shared by the concrete sinks."""

    @abstractmethod
    def _exists(self, recording_id: str) -> bool: ...

    @abstractmethod
    def _store(self, meta: RecordingMeta, events: list[TimelineEntry]) -> None: ...

    @abstractmethod
    def get_meta(self, recording_id: str) -> RecordingMeta: ...

    @abstractmethod
    def load_recording_events(self, recording_id: str) -> list[TimelineEntry]: ...

    def _new_id(self, base: str | None = None) -> str:
        base = base or f"rec-{now_ms()}"
        candidate, suffix = base, 1
        while self._exists(candidate):
            suffix += 1
            candidate = f"{base}-{suffix}"
        return candidate

    def export_recording(self, recording_id: str, *, redact: bool = False) -> str:
        meta = self.get_meta(recording_id)
        return serialize_recording(meta, self.load_recording_events(recording_id), redact=redact)

    def import_recording(self, blob: str | bytes) -> str:
        meta, events = parse_recording(blob)
        if self._exists(meta.id):
            meta.id = self._new_id(meta.id)
        self._store(meta, events)
        logger.info("imported recording %s with %d events", meta.id, len(events))
        return meta.id


class MemoryRecordingSink(_SinkBase):
    def __init__(self) -> None:
        self._metas: dict[str, RecordingMeta] = {}
        self._events: dict[str, list[TimelineEntry]] = {}

    def _exists(self, recording_id: str) -> bool:
        return recording_id in self._metas

    def _store(self, meta: RecordingMeta, events: list[TimelineEntry]) -> None:
        self._metas[meta.id] = meta
        self._events[meta.id] = list(events)

    def _require(self, recording_id: str) -> RecordingMeta:
        meta = self._metas.get(recording_id)
        if meta is None:
            raise RecordingNotFound(recording_id)
        return meta

    def create_recording(self) -> str:
        recording_id = self._new_id()
        self._store(RecordingMeta(id=recording_id, start_time=now_ms()), [])
        return recording_id

    def append_event(self, recording_id: str, entry: TimelineEntry) -> None:
        _record_entry(self._require(recording_id), entry)
        self._events[recording_id].append(entry)

    def finalize_recording(self, recording_id: str) -> None:
        self._require(recording_id).end_time = now_ms()

    def list_recordings(self) -> list[RecordingMeta]:
        return sorted(self._metas.values(), key=lambda meta: meta.start_time, reverse=True)

    def get_meta(self, recording_id: str) -> RecordingMeta:
        return self._require(recording_id)

    def load_recording_events(self, recording_id: str) -> list[TimelineEntry]:
        self._require(recording_id)
        return sorted(self._events[recording_id], key=lambda entry: entry.sequence_index)

    def delete_recording(self, recording_id: str) -> None:
        self._require(recording_id)
        del self._metas[recording_id]
        del self._events[recording_id]


class FileRecordingSink(_SinkBase):
    META_FILE = "meta.json"
    EVENTS_FILE = "events.jsonl"

    def __init__(self, root: Path) -> None:
        self.root = root
        self.recordings_dir = root / "recordings"
        self._open: dict[str, RecordingMeta] = {}

    def _dir(self, recording_id: str) -> Path:
        return self.recordings_dir / sanitize_segment(recording_id)

    def _exists(self, recording_id: str) -> bool:
        return (self._dir(recording_id) / self.META_FILE).exists()

    def _write_meta(self, meta: RecordingMeta) -> None:
        atomic_write_json(self._dir(meta.id) / self.META_FILE, meta.to_dict())

    def _store(self, meta: RecordingMeta, events: list[TimelineEntry]) -> None:
        directory = self._dir(meta.id)
        directory.mkdir(parents=True, exist_ok=True)
        with (directory / self.EVENTS_FILE).open("w", encoding="utf-8") as handle:
            for entry in events:
                handle.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
        self._write_meta(meta)

    def create_recording(self) -> str:
        recording_id = self._new_id()
        meta = RecordingMeta(id=recording_id, start_time=now_ms())
        self._store(meta, [])
        self._open[recording_id] = meta
        logger.info("started recording %s", recording_id)
        return recording_id

    def append_event(self, recording_id: str, entry: TimelineEntry) -> None:
        meta = self._open.get(recording_id) or self.get_meta(recording_id)
        self._open[recording_id] = meta
        with (self._dir(recording_id) / self.EVENTS_FILE).open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
        _record_entry(meta, entry)
        self._write_meta(meta)

    def finalize_recording(self, recording_id: str) -> None:
        meta = self._open.pop(recording_id, None) or self.get_meta(recording_id)
        meta.end_time = now_ms()
        self._write_meta(meta)
        logger.info("finalized recording %s (%d events)", recording_id, meta.event_count)

    def get_meta(self, recording_id: str) -> RecordingMeta:
        path = self._dir(recording_id) / self.META_FILE
        if not path.exists():
            raise RecordingNotFound(recording_id)
        return RecordingMeta.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def list_recordings(self) -> list[RecordingMeta]:
        if not self.recordings_dir.exists():
            return []
        metas: list[RecordingMeta] = []
        for path in self.recordings_dir.glob(f"*/{self.META_FILE}"):
            try:
                metas.append(RecordingMeta.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError) as exc:
                logger.warning("skipping unreadable recording %s: %s", path.parent.name, exc)
        return sorted(metas, key=lambda meta: meta.start_time, reverse=True)

    def load_recording_events(self, recording_id: str) -> list[TimelineEntry]:
        if not self._exists(recording_id):
            raise RecordingNotFound(recording_id)
        path = self._dir(recording_id) / self.EVENTS_FILE
        if not path.exists():
            return []
        events: list[TimelineEntry] = []
        for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(TimelineEntry.from_dict(json.loads(line)))
            except ValueError as exc:
                # A crash mid-write leaves a truncated last line.
                logger.warning("skipping line %d of recording %s: %s", number, recording_id, exc)
        events.sort(key=lambda entry: entry.sequence_index)
        return events

    def delete_recording(self, recording_id: str) -> None:
        if not self._exists(recording_id):
            raise RecordingNotFound(recording_id)
        self._open.pop(recording_id, None)
        shutil.rmtree(self._dir(recording_id))
        logger.info("deleted recording %s", recording_id)


class Recorder:
    """Mirror a live connection into a sink without ever disturbing it.

    Every sink call is best effort: failures are logged and swallowed so a
    full disk or a broken store cannot take the live stream down.
    """

    def __init__(self, sink: RecordingSink) -> None:
        self.sink = sink
        self.recording_id: str | None = None
        self.last_recording_id: str | None = None

    def on_state_change(self, state: ConnectionState, detail: str = "") -> None:
        if state is ConnectionState.CONNECTED:
            if self.recording_id is None:
                self.recording_id = self._call(self.sink.create_recording)
                self.last_recording_id = self.recording_id or self.last_recording_id
        elif self.recording_id is not None:
            self.finalize()

    def on_entry(self, entry: TimelineEntry) -> None:
        if self.recording_id is not None:
            self._call(self.sink.append_event, self.recording_id, entry)

    def finalize(self) -> None:
        recording_id, self.recording_id = self.recording_id, None
        if recording_id is not None:
            self._call(self.sink.finalize_recording, recording_id)

    def _call(self, method: Callable[..., Any], *args: Any) -> Any:
        try:
            return method(*args)
        except Exception:
            logger.exception("recording sink call %s failed", getattr(method, "__name__", method))
            return None
