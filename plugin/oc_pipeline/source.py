"""Converts opencode bus events and hook envelopes into typed events.

Only interesting transitions come through: assistant messages once they are
completed, text parts once they are finished, tool parts once they completed
or failed. Anything malformed converts to ``None``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from oc_shared.event_types import (
    CHAT_PARAMS,
    MESSAGE_PART_UPDATED,
    MESSAGE_UPDATED,
    SESSION_CREATED,
    SESSION_DELETED,
    SESSION_UPDATED,
    TOOL_AFTER,
    TOOL_BEFORE,
    Envelope,
    MessageEvent,
    MessagePartEvent,
    ModelParams,
    ParamsEvent,
    PluginEvent,
    SessionEvent,
    TokenUsage,
    ToolEvent,
)

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

_SESSION_ALIASES = {
    SESSION_CREATED: SESSION_CREATED,
    SESSION_UPDATED: SESSION_UPDATED,
    SESSION_DELETED: SESSION_DELETED,
    "session.delete": SESSION_DELETED,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _coerce_str(val: Any) -> Optional[str]:
    if isinstance(val, str):
        s = val.strip()
        return s if s else None
    return None


def _as_int(val: Any) -> Optional[int]:
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return int(val)
    return None


def _as_float(val: Any) -> Optional[float]:
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return float(val)
    return None


def _dict(val: Any) -> JsonDict:
    return val if isinstance(val, dict) else {}


def convert_session(event_type: str, info: JsonDict, ts: int) -> Optional[SessionEvent]:
    session_id = _coerce_str(info.get("id"))
    if not session_id:
        return None
    return SessionEvent(type=event_type, session_id=session_id, timestamp=ts, title=_coerce_str(info.get("title")))


def convert_message(info: JsonDict, ts: int) -> Optional[MessageEvent]:
    message_id = _coerce_str(info.get("id"))
    session_id = _coerce_str(info.get("sessionID"))
    role = _coerce_str(info.get("role"))
    if not message_id or not session_id or role not in ("user", "assistant"):
        return None
    times = _dict(info.get("time"))
    if role == "user":
        return MessageEvent(
            session_id=session_id,
            timestamp=ts,
            message_id=message_id,
            role="user",
            parent_id=_coerce_str(info.get("parentID")),
            time_created=_as_int(times.get("created")),
        )

    completed = _as_int(times.get("completed"))
    if not completed:
        return None
    provider = _coerce_str(info.get("providerID"))
    model_id = _coerce_str(info.get("modelID"))
    model = f"{provider}/{model_id}" if provider and model_id else model_id

    tokens = _dict(info.get("tokens"))
    cache = _dict(tokens.get("cache"))
    prompt = _as_int(tokens.get("input"))
    completion = _as_int(tokens.get("output"))
    reasoning = _as_int(tokens.get("reasoning"))
    usage = None
    if tokens:
        total = None
        if prompt is not None or completion is not None:
            total = (prompt or 0) + (completion or 0) + (reasoning or 0)
        usage = TokenUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total,
            reasoning_tokens=reasoning,
            cache_read_tokens=_as_int(cache.get("read")),
            cache_write_tokens=_as_int(cache.get("write")),
        )
    return MessageEvent(
        session_id=session_id,
        timestamp=ts,
        message_id=message_id,
        role="assistant",
        model=model,
        parent_id=_coerce_str(info.get("parentID")),
        cost=_as_float(info.get("cost")),
        time_created=_as_int(times.get("created")),
        time_completed=completed,
        usage=usage,
    )


def convert_part(part: JsonDict, ts: int) -> Optional[MessagePartEvent]:
    part_id = _coerce_str(part.get("id"))
    session_id = _coerce_str(part.get("sessionID"))
    message_id = _coerce_str(part.get("messageID"))
    if not part_id or not session_id or not message_id:
        return None

    part_type = part.get("type")
    if part_type == "text":
        text = part.get("text")
        if not _dict(part.get("time")).get("end") or not isinstance(text, str) or not text:
            return None
        return MessagePartEvent(
            session_id=session_id,
            timestamp=ts,
            message_id=message_id,
            part_id=part_id,
            part_type="text",
            content=text,
        )

    if part_type == "tool":
        state = _dict(part.get("state"))
        status = state.get("status")
        if status not in ("completed", "error"):
            return None
        return MessagePartEvent(
            session_id=session_id,
            timestamp=ts,
            message_id=message_id,
            part_id=part_id,
            part_type="tool-call",
            tool_name=_coerce_str(part.get("tool")),
            tool_input=state.get("input"),
            tool_output=state.get("output"),
            tool_error=_coerce_str(state.get("error")) if status == "error" else None,
        )
    return None


def convert_bus_event(event: JsonDict, ts: Optional[int] = None) -> Optional[PluginEvent]:
    event_type = event.get("type")
    props = _dict(event.get("properties"))
    ts = ts or _now_ms()
    if event_type in _SESSION_ALIASES:
        return convert_session(_SESSION_ALIASES[event_type], _dict(props.get("info")), ts)
    if event_type == MESSAGE_UPDATED:
        return convert_message(_dict(props.get("info")), ts)
    if event_type == MESSAGE_PART_UPDATED:
        return convert_part(_dict(props.get("part")), ts)
    return None


def convert_tool_hook(kind: str, context: JsonDict, payload: JsonDict, ts: int) -> Optional[ToolEvent]:
    session_id = _coerce_str(context.get("sessionID"))
    tool = _coerce_str(context.get("tool"))
    if not session_id or not tool:
        return None
    call_id = _coerce_str(context.get("callID"))
    if kind == TOOL_BEFORE:
        return ToolEvent(
            type=TOOL_BEFORE,
            session_id=session_id,
            timestamp=ts,
            tool_name=tool,
            call_id=call_id,
            tool_input=payload.get("args"),
        )
    return ToolEvent(
        type=TOOL_AFTER,
        session_id=session_id,
        timestamp=ts,
        tool_name=tool,
        call_id=call_id,
        tool_output=payload.get("output"),
        duration_ms=_as_float(payload.get("durationMs")),
        error=_coerce_str(payload.get("error")) or _coerce_str(_dict(payload.get("metadata")).get("error")),
    )


def convert_params_hook(context: JsonDict, payload: JsonDict, ts: int) -> Optional[ParamsEvent]:
    session_id = _coerce_str(context.get("sessionID"))
    if not session_id:
        return None
    stop = payload.get("stop")
    if isinstance(stop, str):
        stop = [stop]
    params = ModelParams(
        temperature=_as_float(payload.get("temperature")),
        top_p=_as_float(payload.get("topP")),
        top_k=_as_int(payload.get("topK")),
        max_tokens=_as_int(payload.get("maxTokens")),
        frequency_penalty=_as_float(payload.get("frequencyPenalty")),
        presence_penalty=_as_float(payload.get("presencePenalty")),
        stop=tuple(s for s in stop if isinstance(s, str)) if isinstance(stop, list) else (),
    )
    return ParamsEvent(session_id=session_id, timestamp=ts, params=params)


def convert_envelope(envelope: Envelope) -> Optional[PluginEvent]:
    ts = envelope.ts or _now_ms()
    context = envelope.context or {}
    payload = envelope.payload or {}
    if envelope.kind == "event":
        converted = convert_bus_event(payload, ts)
    elif envelope.kind in (TOOL_BEFORE, TOOL_AFTER):
        converted = convert_tool_hook(envelope.kind, context, payload, ts)
    elif envelope.kind == CHAT_PARAMS:
        converted = convert_params_hook(context, payload, ts)
    else:
        converted = None
    if converted is None:
        logger.debug("envelope not converted", extra={"kind": envelope.kind})
    return converted


def convert_line(obj: Any) -> Optional[PluginEvent]:
    """Parse one decoded IPC line into an event."""
    envelope = Envelope.from_json(obj)
    if envelope is None:
        logger.debug("ignoring malformed ipc line")
        return None
    return convert_envelope(envelope)
