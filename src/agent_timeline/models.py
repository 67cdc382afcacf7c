from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class Actor(str, Enum):
    USER = "user"
    SYSTEM = "system"
    AGENT = "agent"
    LLM = "llm"
    TOOL = "tool"


class Category(str, Enum):
    MESSAGE = "message"
    TOOL = "tool"
    TOKEN = "token"
    CONTROL = "control"
    ERROR = "error"
    PERMISSION = "permission"


class TimelineMode(str, Enum):
    LIVE = "live"
    PAUSED = "paused"
    PLAYING = "playing"


ACTOR_LABELS: dict[Actor, str] = {
    Actor.USER: "User",
    Actor.SYSTEM: "System",
    Actor.AGENT: "Agent",
    Actor.LLM: "LLM",
    Actor.TOOL: "Tools",
}

# rich style names used by the CLI and TUI
ACTOR_STYLES: dict[Actor, str] = {
    Actor.USER: "#60a5fa",
    Actor.SYSTEM: "#4ade80",
    Actor.AGENT: "#f97316",
    Actor.LLM: "#c084fc",
    Actor.TOOL: "#22d3ee",
}

CATEGORY_STYLES: dict[Category, str] = {
    Category.MESSAGE: "#3b82f6",
    Category.TOOL: "#22c55e",
    Category.TOKEN: "#f97316",
    Category.CONTROL: "#8b95a5",
    Category.ERROR: "#ef4444",
    Category.PERMISSION: "#a855f7",
}

_REQUIRED_ENTRY_FIELDS = (
    "id",
    "timestamp",
    "sequence_index",
    "from_actor",
    "to_actor",
    "label",
    "short_label",
    "category",
    "session_id",
)


@dataclass
class TimelineEntry:
    id: str
    timestamp: int
    sequence_index: int
    source_event: Any
    from_actor: Actor
    to_actor: Actor
    label: str
    short_label: str
    category: Category
    session_id: str
    message_id: str | None = None
    part_id: str | None = None
    directory: str | None = None
    # category specific: tokens, cost, tool_name, tool_input, tool_output,
    # model_id, provider_id, duration, error, status, delta, text
    metadata: dict[str, Any] | None = None

    @property
    def tool_name(self) -> str | None:
        return (self.metadata or {}).get("tool_name")

    @property
    def error(self) -> str | None:
        return (self.metadata or {}).get("error")

    @property
    def delta(self) -> str | None:
        return (self.metadata or {}).get("delta")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["from_actor"] = self.from_actor.value
        data["to_actor"] = self.to_actor.value
        data["category"] = self.category.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimelineEntry":
        if not isinstance(data, dict):
            raise ValueError(f"Entry must be an object, got {type(data).__name__}")
        missing = [name for name in _REQUIRED_ENTRY_FIELDS if name not in data]
        if missing:
            raise ValueError(f"Entry is missing fields: {', '.join(missing)}")
        if not isinstance(data["sequence_index"], int) or not isinstance(data["timestamp"], (int, float)):
            raise ValueError(f"Entry {data['id']!r} has a non-numeric timestamp or sequence_index")
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError(f"Entry {data['id']!r} has non-object metadata")
        return cls(
            id=str(data["id"]),
            timestamp=int(data["timestamp"]),
            sequence_index=data["sequence_index"],
            source_event=data.get("source_event"),
            from_actor=Actor(data["from_actor"]),
            to_actor=Actor(data["to_actor"]),
            label=str(data["label"]),
            short_label=str(data["short_label"]),
            category=Category(data["category"]),
            session_id=str(data["session_id"]),
            message_id=data.get("message_id"),
            part_id=data.get("part_id"),
            directory=data.get("directory"),
            metadata=metadata,
        )


@dataclass
class RecordingMeta:
    id: str
    start_time: int
    end_time: int = 0
    session_ids: list[str] = field(default_factory=list)
    event_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordingMeta":
        if not isinstance(data, dict):
            raise ValueError("Recording meta must be an object")
        if not isinstance(data.get("id"), str) or not data["id"]:
            raise ValueError("Recording meta needs a non-empty string id")
        session_ids = data.get("session_ids", [])
        if not isinstance(session_ids, list):
            raise ValueError("Recording meta session_ids must be a list")
        try:
            return cls(
                id=data["id"],
                start_time=int(data.get("start_time", 0)),
                end_time=int(data.get("end_time", 0)),
                session_ids=[str(s) for s in session_ids],
                event_count=int(data.get("event_count", 0)),
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Recording meta has invalid numbers: {exc}") from exc
