from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Dict, Optional, Union

from oc_logs.audit_log import AuditLog
from oc_pipeline.registry import DEFAULT_TITLE, MessageInfo, SessionRegistry, TraceState
from oc_shared.errors import SinkApiError
from oc_shared.event_types import (
    SESSION_CREATED,
    SESSION_DELETED,
    SESSION_UPDATED,
    TOOL_BEFORE,
    MessageEvent,
    MessagePartEvent,
    ModelParams,
    ParamsEvent,
    PluginEvent,
    SessionEvent,
    TokenUsage,
    ToolEvent,
)
from oc_shared.redaction import Redactor, sanitize_for_trace

from .client import SinkClient
from .records import GenerationRecord, SpanRecord, TraceRecord

logger = logging.getLogger(__name__)

USER_SPAN_NAME = "user-message"
ASSISTANT_GENERATION_NAME = "assistant-response"

Record = Union[TraceRecord, GenerationRecord, SpanRecord]


def _now_ms() -> int:
    return int(time.time() * 1000)


def tool_span_name(tool_name: Optional[str]) -> str:
    return f"tool-{tool_name or 'unknown'}"


def usage_details(usage: Optional[TokenUsage]) -> Optional[Dict[str, int]]:
    if usage is None:
        return None
    out: Dict[str, int] = {}
    if usage.prompt_tokens is not None:
        out["input"] = usage.prompt_tokens
    if usage.completion_tokens is not None:
        out["output"] = usage.completion_tokens
    if usage.total_tokens is not None:
        out["total"] = usage.total_tokens
    # Optional counters are only reported when they carry information.
    if usage.reasoning_tokens:
        out["reasoning"] = usage.reasoning_tokens
    if usage.cache_read_tokens:
        out["cache_read"] = usage.cache_read_tokens
    if usage.cache_write_tokens:
        out["cache_write"] = usage.cache_write_tokens
    return out or None


def cost_details(cost: Optional[float]) -> Optional[Dict[str, float]]:
    if cost is None or cost <= 0:
        return None
    return {"total": float(cost)}


def model_parameters(params: Optional[ModelParams]) -> Optional[Dict[str, Any]]:
    if params is None:
        return None
    out: Dict[str, Any] = {}
    if params.temperature is not None:
        out["temperature"] = params.temperature
    if params.top_p is not None:
        out["top_p"] = params.top_p
    if params.top_k is not None:
        out["top_k"] = params.top_k
    if params.max_tokens is not None:
        out["max_tokens"] = params.max_tokens
    if params.frequency_penalty is not None:
        out["frequency_penalty"] = params.frequency_penalty
    if params.presence_penalty is not None:
        out["presence_penalty"] = params.presence_penalty
    if params.stop:
        out["stop"] = ",".join(params.stop)
    return out or None


class EventMapper:
    """Turns finalized events into trace/generation/span calls.

    ``handle`` is the only exception boundary: a sink call that still fails
    after the client's retries, or any unexpected error, is logged there and
    the event is dropped.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        client: SinkClient,
        redactor: Optional[Redactor] = None,
        *,
        trace_name_prefix: str = "",
        audit: Optional[AuditLog] = None,
        now_ms=_now_ms,
    ) -> None:
        self.registry = registry
        self.client = client
        self.redactor = redactor or Redactor()
        self.trace_name_prefix = trace_name_prefix
        self.audit = audit
        self._now_ms = now_ms

    async def handle(self, event: PluginEvent) -> None:
        try:
            await self._dispatch(event)
        except SinkApiError as err:
            logger.error(
                "dropping event after sink failure",
                extra={"event_type": event.type, "session_id": event.session_id, "operation": err.operation},
            )
        except Exception:
            logger.exception("error mapping event", extra={"event_type": event.type, "session_id": event.session_id})

    async def _dispatch(self, event: PluginEvent) -> None:
        if isinstance(event, SessionEvent):
            if event.type == SESSION_DELETED:
                await self._on_session_deleted(event)
            elif event.type in (SESSION_CREATED, SESSION_UPDATED):
                await self._on_session(event)
            else:
                logger.debug("ignoring session event", extra={"event_type": event.type})
        elif isinstance(event, MessageEvent):
            await self._on_message(event)
        elif isinstance(event, MessagePartEvent):
            await self._on_part(event)
        elif isinstance(event, ToolEvent):
            await self._on_tool(event)
        elif isinstance(event, ParamsEvent):
            self._on_params(event)
        else:
            logger.debug("ignoring unknown event", extra={"event": repr(event)})

    def trace_name(self, title: str) -> str:
        name = sanitize_for_trace(self.redactor.text(title) or "")
        return f"{self.trace_name_prefix}{name or DEFAULT_TITLE}"

    # session lifecycle

    async def _on_session(self, event: SessionEvent) -> None:
        state = self.registry.get(event.session_id)
        if state is None:
            state = TraceState.for_session(event.session_id, event.title)
            self.registry.set(state)
            logger.info("session started", extra={"session_id": event.session_id, "trace_id": state.trace_id})
        elif event.type == SESSION_UPDATED and event.title and event.title != state.title:
            state.title = event.title
        else:
            return
        record = TraceRecord(id=state.trace_id, session_id=state.session_id, name=self.trace_name(state.title))
        await self._send(state, record)

    async def _on_session_deleted(self, event: SessionEvent) -> None:
        try:
            await self.client.flush()
        except SinkApiError as err:
            logger.warning("flush before session delete failed", extra={"session_id": event.session_id, "error": str(err)})
        if self.registry.delete(event.session_id):
            logger.info("session ended", extra={"session_id": event.session_id})

    # messages

    async def _on_message(self, event: MessageEvent) -> None:
        state = self.registry.get(event.session_id)
        if state is None:
            logger.warning(
                "no session state for message", extra={"session_id": event.session_id, "message_id": event.message_id}
            )
            return
        if event.message_id in state.messages:
            return

        observation_id = f"{event.message_id}-{self._now_ms()}"
        parent_observation_id = None
        if event.parent_id:
            parent = state.messages.get(event.parent_id)
            if parent is not None:
                parent_observation_id = parent.observation_id

        # Register and drain before awaiting the sink so that concurrent
        # handlers see the message and params are consumed exactly once.
        params = state.take_pending_params()
        state.messages[event.message_id] = MessageInfo(
            observation_id=observation_id,
            role=event.role,
            model=event.model,
            parent_observation_id=parent_observation_id,
        )

        record: Record
        if event.role == "user":
            record = SpanRecord(
                id=observation_id,
                trace_id=state.trace_id,
                parent_observation_id=parent_observation_id,
                name=USER_SPAN_NAME,
            )
        else:
            record = GenerationRecord(
                id=observation_id,
                trace_id=state.trace_id,
                parent_observation_id=parent_observation_id,
                name=ASSISTANT_GENERATION_NAME,
                model=event.model,
                model_parameters=model_parameters(params),
                usage_details=usage_details(event.usage),
                cost_details=cost_details(event.cost),
                start_time=event.time_created,
                end_time=event.time_completed,
            )
        await self._send(state, record)

    async def _on_part(self, event: MessagePartEvent) -> None:
        state = self.registry.get(event.session_id)
        if state is None:
            logger.warning(
                "no session state for message part",
                extra={"session_id": event.session_id, "message_id": event.message_id},
            )
            return
        info = state.messages.get(event.message_id)
        if info is None:
            logger.warning(
                "no message info for part",
                extra={"session_id": event.session_id, "message_id": event.message_id, "part_type": event.part_type},
            )
            return

        record: Record
        if event.part_type == "text":
            if not event.content:
                return
            text = self.redactor.text(event.content)
            if info.role == "user":
                record = SpanRecord(id=info.observation_id, trace_id=state.trace_id, name=USER_SPAN_NAME, input=text)
            else:
                record = GenerationRecord(
                    id=info.observation_id, trace_id=state.trace_id, name=ASSISTANT_GENERATION_NAME, output=text
                )
        elif event.part_type == "tool-call":
            span_id = state.spans.get(event.part_id)
            if span_id is None:
                span_id = f"{info.observation_id}:{event.part_id}"
                state.spans[event.part_id] = span_id
            metadata = {"error": self.redactor.text(event.tool_error)} if event.tool_error else None
            record = SpanRecord(
                id=span_id,
                trace_id=state.trace_id,
                parent_observation_id=info.observation_id,
                name=tool_span_name(event.tool_name),
                input=self.redactor.obj(event.tool_input),
                output=self.redactor.obj(event.tool_output),
                metadata=metadata,
                end_time=event.timestamp,
            )
        else:
            logger.debug("ignoring part type", extra={"part_type": event.part_type})
            return
        await self._send(state, record)

    # tool hooks

    async def _on_tool(self, event: ToolEvent) -> None:
        state = self.registry.get(event.session_id)
        if state is None:
            logger.warning("no session state for tool event", extra={"session_id": event.session_id})
            return

        span_id: Optional[str] = None
        if event.call_id:
            if event.type == TOOL_BEFORE:
                span_id = state.spans.setdefault(event.call_id, f"{event.session_id}:tool:{event.call_id}")
            else:
                span_id = state.spans.pop(event.call_id, f"{event.session_id}:tool:{event.call_id}")

        if event.type == TOOL_BEFORE:
            record = SpanRecord(
                id=span_id,
                trace_id=state.trace_id,
                name=tool_span_name(event.tool_name),
                input=self.redactor.obj(event.tool_input),
                start_time=event.timestamp,
            )
        else:
            metadata: Dict[str, Any] = {}
            if event.error:
                metadata["error"] = self.redactor.text(event.error)
            if event.duration_ms is not None:
                metadata["durationMs"] = event.duration_ms
            record = SpanRecord(
                id=span_id,
                trace_id=state.trace_id,
                name=tool_span_name(event.tool_name),
                output=self.redactor.obj(event.tool_output),
                metadata=metadata or None,
                end_time=event.timestamp,
            )
        await self._send(state, record)

    def _on_params(self, event: ParamsEvent) -> None:
        state = self.registry.get(event.session_id)
        if state is None:
            logger.warning("no session state for chat.params", extra={"session_id": event.session_id})
            return
        state.pending_params = event.params
        logger.debug("stored pending model params", extra={"session_id": event.session_id})

    async def _send(self, state: TraceState, record: Record) -> None:
        if isinstance(record, TraceRecord):
            entity = "trace"
        elif isinstance(record, GenerationRecord):
            entity = "generation"
        else:
            entity = "span"
        if self.audit is not None:
            data = {k: v for k, v in dataclasses.asdict(record).items() if v is not None}
            # File append; keep it off the event loop.
            await asyncio.to_thread(self.audit.record, entity, state.session_id, state.trace_id, data)

        if isinstance(record, TraceRecord):
            await self.client.create_trace(record)
        elif isinstance(record, GenerationRecord):
            await self.client.create_generation(record)
        else:
            await self.client.create_span(record)
