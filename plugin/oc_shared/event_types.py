from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union


JsonDict = Dict[str, Any]

SESSION_CREATED = "session.created"
SESSION_UPDATED = "session.updated"
SESSION_DELETED = "session.deleted"
MESSAGE_UPDATED = "message.updated"
MESSAGE_PART_UPDATED = "message.part.updated"
TOOL_BEFORE = "tool.execute.before"
TOOL_AFTER = "tool.execute.after"
CHAT_PARAMS = "chat.params"

SESSION_TYPES = (SESSION_CREATED, SESSION_UPDATED, SESSION_DELETED)
TOOL_TYPES = (TOOL_BEFORE, TOOL_AFTER)


@dataclass(frozen=True)
class Envelope:
    """One line of the IPC file.

    Bus events travel as ``kind="event"`` with the raw ``{"type", "properties"}``
    object in ``payload``; hooks use their hook name as ``kind`` and carry the
    hook input in ``context`` and its output in ``payload``.
    """

    kind: str
    ts: int
    source: Optional[str]
    context: Optional[Dict[str, Any]]
    payload: Optional[Dict[str, Any]]

    @classmethod
    def from_json(cls, obj: Any) -> Optional["Envelope"]:
        if not isinstance(obj, dict):
            return None
        # Bare bus events are accepted without the envelope wrapper.
        if "kind" not in obj and isinstance(obj.get("type"), str):
            return cls(kind="event", ts=0, source=None, context=None, payload=obj)
        kind = obj.get("kind")
        if not isinstance(kind, str) or not kind.strip():
            return None
        ts = obj.get("ts")
        context = obj.get("context")
        payload = obj.get("payload")
        source = obj.get("source")
        return cls(
            kind=kind.strip(),
            ts=int(ts) if isinstance(ts, (int, float)) else 0,
            source=source if isinstance(source, str) else None,
            context=context if isinstance(context, dict) else None,
            payload=payload if isinstance(payload, dict) else None,
        )


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None
    cache_read_tokens: Optional[int] = None
    cache_write_tokens: Optional[int] = None


@dataclass(frozen=True)
class ModelParams:
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_tokens: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SessionEvent:
    type: str
    session_id: str
    timestamp: int
    title: Optional[str] = None


@dataclass(frozen=True)
class MessageEvent:
    session_id: str
    timestamp: int
    message_id: str
    role: str
    model: Optional[str] = None
    parent_id: Optional[str] = None
    cost: Optional[float] = None
    time_created: Optional[int] = None
    time_completed: Optional[int] = None
    usage: Optional[TokenUsage] = None
    type: str = MESSAGE_UPDATED


@dataclass(frozen=True)
class MessagePartEvent:
    session_id: str
    timestamp: int
    message_id: str
    part_id: str
    part_type: str
    content: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Any = None
    tool_output: Any = None
    tool_error: Optional[str] = None
    type: str = MESSAGE_PART_UPDATED


@dataclass(frozen=True)
class ToolEvent:
    type: str
    session_id: str
    timestamp: int
    tool_name: str
    call_id: Optional[str] = None
    tool_input: Any = None
    tool_output: Any = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ParamsEvent:
    session_id: str
    timestamp: int
    params: ModelParams
    type: str = CHAT_PARAMS


PluginEvent = Union[SessionEvent, MessageEvent, MessagePartEvent, ToolEvent, ParamsEvent]


def event_key(event: PluginEvent) -> str:
    """Grouping key used for debouncing.

    - parts: the part id, so every streaming chunk of one part shares a key
    - messages: the message id
    - tools: session + tool name + arrival time (unique per invocation)
    - everything else: the session id
    """
    if isinstance(event, MessagePartEvent):
        return event.part_id
    if isinstance(event, MessageEvent):
        return event.message_id
    if isinstance(event, ToolEvent):
        return f"{event.session_id}:{event.tool_name}:{event.timestamp}"
    return event.session_id


def dedup_key(event: PluginEvent) -> str:
    """Identity recorded in the processed-keys ledger.

    One emitted event, not one logical unit: a redelivered event keeps its
    arrival timestamp and is skipped, while a later update of the same part
    (or a ``session.updated`` after ``session.created``) gets through.
    """
    return f"{event.type}:{event_key(event)}:{event.timestamp}"
