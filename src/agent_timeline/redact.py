from __future__ import annotations

from typing import Any

import hyperscan

from agent_timeline.redact_patterns import PATTERNS

REDACTED = "[REDACTED]"

_db: hyperscan.Database | None = None


def _get_db() -> hyperscan.Database:
    global _db
    if _db is None:
        exprs, ids = zip(*PATTERNS)
        _db = hyperscan.Database()
        _db.compile(
            expressions=list(exprs),
            ids=list(ids),
            elements=len(PATTERNS),
            flags=[hyperscan.HS_FLAG_UTF8 | hyperscan.HS_FLAG_SOM_LEFTMOST] * len(PATTERNS),
        )
    return _db


def _merge_overlaps(spans: list[tuple[int, int]]) -> list[tuple[int, int]]:
    if not spans:
        return []
    sorted_spans = sorted(spans)
    merged = [sorted_spans[0]]
    for start, end in sorted_spans[1:]:
        if start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def redact_secrets(text: str) -> str:
    if not text:
        return text
    data = text.encode("utf-8")
    matches: list[tuple[int, int]] = []

    def on_match(id: int, from_: int, to: int, flags: int, context: list) -> None:
        context.append((from_, to))

    _get_db().scan(data, match_event_handler=on_match, context=matches)
    if not matches:
        return text

    # Splice on bytes so multi-byte characters before a match keep offsets valid.
    for start, end in sorted(_merge_overlaps(matches), key=lambda s: -s[1]):
        data = data[:start] + REDACTED.encode("utf-8") + data[end:]
    return data.decode("utf-8")


def redact_value(value: Any) -> Any:
    """Redact every string value inside a JSON-like structure."""
    if isinstance(value, str):
        return redact_secrets(value)
    if isinstance(value, dict):
        return {key: redact_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [redact_value(item) for item in value]
    return value
