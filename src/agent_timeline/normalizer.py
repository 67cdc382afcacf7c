"""Map raw upstream agent events onto timeline entries.

Every supported event kind has one handler in ``_HANDLERS``. A handler reads
the event's ``properties`` and returns the fields that differ per kind
(actors, category, labels, correlation ids, metadata), or ``None`` for
sub-states that are intentionally ignored. Unknown kinds are skipped the
same way: the upstream vocabulary grows over time and a miss is not an error.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from agent_timeline.models import Actor, Category, TimelineEntry
from agent_timeline.utils import now_ms, truncate

logger = logging.getLogger(__name__)

TOOL_OUTPUT_MAX = 200


class SequenceCounter:
    """Hands out sequence indexes and entry ids for one normalizer.

    ``reset`` starts a new epoch for a fresh logical session. Sequence
    indexes keep increasing across epochs so entries from before and after
    a reset never collide in the same store.
    """

    def __init__(self) -> None:
        self._next = 0
        self.epoch = 0

    def next(self) -> int:
        value = self._next
        self._next += 1
        return value

    def peek(self) -> int:
        return self._next

    def reset(self) -> None:
        self.epoch += 1

    def make_id(self, sequence_index: int, timestamp: int) -> str:
        return f"evt-{timestamp}-{self.epoch}-{sequence_index}"


Fields = dict[str, Any]


def _fields(
    from_actor: Actor,
    to_actor: Actor,
    category: Category,
    label: str,
    short_label: str,
    session_id: str,
    **extra: Any,
) -> Fields:
    return {
        "from_actor": from_actor,
        "to_actor": to_actor,
        "category": category,
        "label": label,
        "short_label": short_label,
        "session_id": session_id,
        **extra,
    }


def _obj(value: Any) -> dict | None:
    """``value`` if it is an object, ``{}`` if missing, ``None`` for any other shape."""
    if value is None:
        return {}
    return value if isinstance(value, dict) else None


def _compact(metadata: dict[str, Any]) -> dict[str, Any] | None:
    cleaned = {key: value for key, value in metadata.items() if value is not None}
    return cleaned or None


def _session_created(props: dict) -> Fields | None:
    info = _obj(props.get("info"))
    if info is None:
        return None
    return _fields(
        Actor.SYSTEM,
        Actor.SYSTEM,
        Category.CONTROL,
        f"Session Created: {info.get('title') or info.get('id', '')}",
        "Session+",
        info.get("id", ""),
    )


def _session_updated(props: dict) -> Fields | None:
    info = _obj(props.get("info"))
    if info is None:
        return None
    return _fields(
        Actor.SYSTEM,
        Actor.SYSTEM,
        Category.CONTROL,
        f"Session Updated: {info.get('title', '')}",
        "Updated",
        info.get("id", ""),
    )


def _session_status(props: dict) -> Fields | None:
    status = _obj(props.get("status"))
    if status is None:
        return None
    session_id = props.get("sessionID", "")
    kind = status.get("type")
    if kind == "busy":
        return _fields(
            Actor.SYSTEM, Actor.AGENT, Category.CONTROL, "Agent Activated", "Busy", session_id,
            metadata={"status": "busy"},
        )
    if kind == "idle":
        return _fields(
            Actor.AGENT, Actor.SYSTEM, Category.CONTROL, "Agent Idle", "Idle", session_id,
            metadata={"status": "idle"},
        )
    if kind == "retry":
        attempt = status.get("attempt")
        message = status.get("message", "")
        return _fields(
            Actor.LLM,
            Actor.AGENT,
            Category.ERROR,
            f"Retry #{attempt}: {message}",
            f"Retry #{attempt}",
            session_id,
            metadata={"error": message},
        )
    return None


def _session_error(props: dict) -> Fields | None:
    error = _obj(props.get("error"))
    if error is None:
        return None
    message = (_obj(error.get("data")) or {}).get("message")
    return _fields(
        Actor.LLM,
        Actor.SYSTEM,
        Category.ERROR,
        f"Error: {message or 'Unknown'}",
        "Error",
        props.get("sessionID") or "unknown",
        metadata=_compact({"error": message}),
    )


def _message_updated(props: dict) -> Fields | None:
    msg = _obj(props.get("info"))
    if msg is None:
        return None
    ids = {"message_id": msg.get("id")}
    if msg.get("role") == "user":
        model = _obj(msg.get("model")) or {}
        return _fields(
            Actor.USER,
            Actor.SYSTEM,
            Category.MESSAGE,
            "User Message",
            "Msg",
            msg.get("sessionID", ""),
            metadata=_compact({"model_id": model.get("modelID"), "provider_id": model.get("providerID")}),
            **ids,
        )
    return _fields(
        Actor.LLM,
        Actor.AGENT,
        Category.MESSAGE,
        f"Assistant Updated ({msg.get('finish') or 'pending'})",
        "Asst",
        msg.get("sessionID", ""),
        metadata=_compact(
            {
                "tokens": msg.get("tokens"),
                "cost": msg.get("cost"),
                "model_id": msg.get("modelID"),
                "provider_id": msg.get("providerID"),
            }
        ),
        **ids,
    )


def _streamed_text(part: dict, delta: str | None, prefix: str, short_label: str) -> Fields:
    text = part.get("text")
    text = text if isinstance(text, str) else ""
    delta = delta if isinstance(delta, str) else None
    if delta:
        metadata = {"delta": delta}
    else:
        # Older servers send the full text instead of a delta.
        logger.debug("part %s carries no delta, falling back to full text", part.get("id"))
        metadata = {"text": text} if text else None
    return _fields(
        Actor.LLM,
        Actor.AGENT,
        Category.TOKEN,
        f"{prefix}: {truncate(delta or text)}",
        short_label,
        part.get("sessionID", ""),
        metadata=metadata,
    )


def _tool_duration(state: dict) -> int | None:
    timing = _obj(state.get("time")) or {}
    start, end = timing.get("start"), timing.get("end")
    if isinstance(start, (int, float)) and isinstance(end, (int, float)):
        return end - start
    return None


def _tool_part(part: dict) -> Fields | None:
    tool = part.get("tool", "unknown")
    state = _obj(part.get("state"))
    if state is None:
        return None
    status = state.get("status")
    session_id = part.get("sessionID", "")
    if status == "pending":
        return _fields(
            Actor.AGENT, Actor.TOOL, Category.TOOL, f"Call: {tool}", tool, session_id,
            metadata=_compact({"tool_name": tool, "tool_input": state.get("input")}),
        )
    if status == "running":
        return _fields(
            Actor.TOOL, Actor.TOOL, Category.TOOL, f"Running: {tool}", tool, session_id,
            metadata=_compact({"tool_name": tool, "tool_input": state.get("input")}),
        )
    if status == "completed":
        return _fields(
            Actor.TOOL,
            Actor.AGENT,
            Category.TOOL,
            f"Result: {tool}",
            tool,
            session_id,
            metadata=_compact(
                {
                    "tool_name": tool,
                    "tool_input": state.get("input"),
                    "tool_output": truncate(str(state.get("output") or ""), TOOL_OUTPUT_MAX),
                    "duration": _tool_duration(state),
                }
            ),
        )
    if status == "error":
        return _fields(
            Actor.TOOL,
            Actor.AGENT,
            Category.ERROR,
            f"Error: {tool}",
            tool,
            session_id,
            metadata=_compact({"tool_name": tool, "error": state.get("error"), "duration": _tool_duration(state)}),
        )
    return None


def _message_part_updated(props: dict) -> Fields | None:
    part = _obj(props.get("part"))
    if part is None:
        return None
    delta = props.get("delta")
    kind = part.get("type")
    session_id = part.get("sessionID", "")

    if kind == "text":
        fields = _streamed_text(part, delta, "Text", "Text")
    elif kind == "reasoning":
        fields = _streamed_text(part, delta, "Reasoning", "Think")
    elif kind == "tool":
        fields = _tool_part(part)
    elif kind == "step-start":
        fields = _fields(Actor.AGENT, Actor.LLM, Category.CONTROL, "LLM Step Start", "Step→", session_id)
    elif kind == "step-finish":
        fields = _fields(
            Actor.LLM,
            Actor.AGENT,
            Category.CONTROL,
            f"Step Done ({part.get('reason')})",
            "←Step",
            session_id,
            metadata=_compact({"tokens": part.get("tokens"), "cost": part.get("cost")}),
        )
    elif kind == "subtask":
        fields = _fields(
            Actor.AGENT,
            Actor.AGENT,
            Category.CONTROL,
            f"Subtask: {truncate(str(part.get('description') or part.get('agent') or ''))}",
            "Subtask",
            session_id,
        )
    elif kind == "agent":
        name = part.get("name", "")
        fields = _fields(Actor.AGENT, Actor.AGENT, Category.CONTROL, f"Agent: {name}", name, session_id)
    else:
        return None

    if fields is None:
        return None
    fields["message_id"] = part.get("messageID")
    fields["part_id"] = part.get("id")
    return fields


def _permission_asked(props: dict) -> Fields | None:
    return _fields(
        Actor.AGENT,
        Actor.USER,
        Category.PERMISSION,
        f"Permission: {props.get('permission')}",
        "Perm?",
        props.get("sessionID", ""),
    )


def _permission_replied(props: dict) -> Fields | None:
    reply = props.get("reply")
    denied = reply == "reject"
    return _fields(
        Actor.USER,
        Actor.AGENT,
        Category.PERMISSION,
        f"Permission {'Denied' if denied else 'Granted'} ({reply})",
        "Deny" if denied else "Allow",
        props.get("sessionID", ""),
    )


_HANDLERS: dict[str, Callable[[dict], Fields | None]] = {
    "session.created": _session_created,
    "session.updated": _session_updated,
    "session.status": _session_status,
    "session.error": _session_error,
    "message.updated": _message_updated,
    "message.part.updated": _message_part_updated,
    "permission.asked": _permission_asked,
    "permission.replied": _permission_replied,
}

SUPPORTED_KINDS = frozenset(_HANDLERS)


class EventNormalizer:
    def __init__(self, counter: SequenceCounter | None = None, clock: Callable[[], int] = now_ms) -> None:
        self.counter = counter or SequenceCounter()
        self._clock = clock

    def reset(self) -> None:
        self.counter.reset()

    def normalize(self, event: Any, directory: str = "global") -> TimelineEntry | None:
        if not isinstance(event, dict):
            return None
        kind = event.get("type")
        handler = _HANDLERS.get(kind) if isinstance(kind, str) else None
        if handler is None:
            return None
        props = event.get("properties")
        if not isinstance(props, dict):
            return None
        fields = handler(props)
        if fields is None:
            return None
        timestamp = self._clock()
        sequence_index = self.counter.next()
        return TimelineEntry(
            id=self.counter.make_id(sequence_index, timestamp),
            timestamp=timestamp,
            sequence_index=sequence_index,
            source_event=event,
            directory=directory,
            **fields,
        )
