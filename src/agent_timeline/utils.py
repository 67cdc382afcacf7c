from __future__ import annotations

import json
import re
import time
from datetime import datetime
from pathlib import Path


def now_ms() -> int:
    return int(time.time() * 1000)


def truncate(value: str, max_len: int = 60) -> str:
    return value[: max_len - 1] + "…" if len(value) > max_len else value


def sanitize_segment(segment: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", segment).strip(".-")
    return cleaned or "unknown"


def format_timestamp(ts: int) -> str:
    """Wall-clock time of day with milliseconds, e.g. ``14:03:07.250``."""
    moment = datetime.fromtimestamp(ts / 1000)
    return moment.strftime("%H:%M:%S") + f".{moment.microsecond // 1000:03d}"


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{ms:.0f}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    return f"{int(ms // 60_000)}m {(ms % 60_000) / 1000:.0f}s"


def format_relative_time(ts: int, now: int | None = None) -> str:
    diff = (now if now is not None else now_ms()) - ts
    if diff < 60_000:
        return "just now"
    if diff < 3_600_000:
        return f"{diff // 60_000}m ago"
    if diff < 86_400_000:
        return f"{diff // 3_600_000}h ago"
    return datetime.fromtimestamp(ts / 1000).strftime("%Y-%m-%d")


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(content, encoding="utf-8")
    tmp_path.replace(path)


def atomic_write_json(path: Path, content: dict) -> None:
    serialized = json.dumps(content, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
    atomic_write_text(path, serialized)
