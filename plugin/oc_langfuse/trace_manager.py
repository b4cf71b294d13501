from __future__ import annotations

import datetime
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from langfuse import Langfuse

from oc_shared.config import LangfuseSettings

from .records import GenerationRecord, SpanRecord, TraceRecord

logger = logging.getLogger(__name__)

DEFAULT_FINALIZE_AFTER_S = 60.0
_ENDED_MEMORY = 10_000
_ROOT_MEMORY = 10_000


def _format_span_id(span_id_int: int) -> str:
    return format(span_id_int, "016x")


def _span_id_hex(span_obj: Any) -> Optional[str]:
    # LangfuseSpan/LangfuseGeneration wrap an OTEL span.
    otel_span = getattr(span_obj, "_otel_span", None)
    if otel_span is None:
        return None
    try:
        return _format_span_id(otel_span.get_span_context().span_id)
    except (AttributeError, TypeError, ValueError):
        return None


def _observation_span_id(obj: Any) -> Optional[str]:
    span_id = getattr(obj, "id", None)
    if isinstance(span_id, str):
        return span_id
    return _span_id_hex(obj)


def _iso_from_ms(ts_ms: Optional[int]) -> Optional[str]:
    if ts_ms is None:
        return None
    return datetime.datetime.fromtimestamp(ts_ms / 1000.0, tz=datetime.timezone.utc).isoformat()


def _with_times(metadata: Optional[Dict[str, Any]], start_ms: Optional[int], end_ms: Optional[int]) -> Optional[Dict[str, Any]]:
    if start_ms is None and end_ms is None:
        return metadata
    out = dict(metadata or {})
    if start_ms is not None:
        out["startTime"] = _iso_from_ms(start_ms)
    if end_ms is not None:
        out["endTime"] = _iso_from_ms(end_ms)
    return out


def _drop_none(**kwargs: Any) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}


@dataclass
class _LiveObservation:
    obj: Any
    span_id: Optional[str]
    created_ms: int
    touched: float
    end_time: Optional[int] = None


class LangfuseSink:
    """TraceSink on top of the Langfuse v3 (OTEL) client.

    Langfuse observations are OTEL spans: they are created once and exported
    when ended. Logical observation ids from the pipeline are therefore mapped
    to live span objects here: the first call for an id starts the
    observation, later calls ``update()`` it. Observations are ended once they
    have been idle for ``finalize_after_s`` (checked on ``flush()``), at
    ``shutdown()``, or at once when the record carries no id. Calls for an id
    that was already ended are dropped.

    The maps are guarded by a lock because ``flush``/``shutdown`` run in a
    worker thread.
    """

    def __init__(
        self,
        client: Any,
        *,
        finalize_after_s: float = DEFAULT_FINALIZE_AFTER_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._finalize_after_s = finalize_after_s
        self._clock = clock
        self._lock = threading.Lock()
        self._root_span_ids: "OrderedDict[str, Optional[str]]" = OrderedDict()  # trace id -> root span id
        self._live: Dict[str, _LiveObservation] = {}
        self._ended: "OrderedDict[str, Optional[str]]" = OrderedDict()  # observation id -> span id

    @staticmethod
    def create(settings: LangfuseSettings) -> Optional["LangfuseSink"]:
        if not settings.public_key or not settings.secret_key:
            return None
        client = Langfuse(
            public_key=settings.public_key,
            secret_key=settings.secret_key,
            base_url=settings.base_url,
            flush_at=15,
            flush_interval=max(settings.flush_interval_ms, 100) / 1000.0,
        )
        return LangfuseSink(client)

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def create_trace(self, record: TraceRecord) -> None:
        # Trace attributes ride on a short root span; every create_trace call
        # emits one so title changes reach the backend without waiting for
        # shutdown.
        with self._lock:
            root = self._client.start_span(trace_context={"trace_id": record.id}, name=record.name)
            root.update_trace(
                **_drop_none(
                    name=record.name,
                    session_id=record.session_id,
                    metadata=record.metadata,
                    tags=record.tags,
                    input=record.input,
                    output=record.output,
                )
            )
            root.end()
            if self._root_span_ids.get(record.id) is None:
                self._root_span_ids[record.id] = _observation_span_id(root)
                while len(self._root_span_ids) > _ROOT_MEMORY:
                    self._root_span_ids.popitem(last=False)
            else:
                self._root_span_ids.move_to_end(record.id)

    def create_generation(self, record: GenerationRecord) -> None:
        fields = _drop_none(
            name=record.name,
            model=record.model,
            model_parameters=record.model_parameters,
            input=record.input,
            output=record.output,
            usage_details=record.usage_details,
            cost_details=record.cost_details,
            metadata=_with_times(record.metadata, record.start_time, record.end_time),
        )
        self._upsert(record.id, record.trace_id, record.parent_observation_id, record.end_time, fields, as_type="generation")

    def create_span(self, record: SpanRecord) -> None:
        fields = _drop_none(
            name=record.name,
            input=record.input,
            output=record.output,
            metadata=_with_times(record.metadata, record.start_time, record.end_time),
        )
        self._upsert(record.id, record.trace_id, record.parent_observation_id, record.end_time, fields, as_type="span")

    def _upsert(
        self,
        obs_id: Optional[str],
        trace_id: str,
        parent_id: Optional[str],
        end_time: Optional[int],
        fields: Dict[str, Any],
        *,
        as_type: str,
    ) -> None:
        now = self._clock()
        with self._lock:
            if obs_id is not None and obs_id in self._ended:
                logger.debug("observation already ended, dropping update", extra={"observation_id": obs_id})
                return
            live = self._live.get(obs_id) if obs_id is not None else None
            if live is None:
                trace_context = {"trace_id": trace_id}
                parent_span_id = self._parent_span_id(trace_id, parent_id)
                if parent_span_id:
                    trace_context["parent_span_id"] = parent_span_id
                if as_type == "generation":
                    obj = self._client.start_observation(trace_context=trace_context, as_type="generation", **fields)
                else:
                    obj = self._client.start_span(trace_context=trace_context, **fields)
                live = _LiveObservation(
                    obj=obj,
                    span_id=_observation_span_id(obj),
                    created_ms=int(time.time() * 1000),
                    touched=now,
                )
                if obs_id is None:
                    live.end_time = end_time
                    self._end(live)
                    return
                self._live[obs_id] = live
            else:
                update = {k: v for k, v in fields.items() if k != "name"}
                if update:
                    live.obj.update(**update)
                live.touched = now
            if end_time is not None:
                live.end_time = end_time

    def _parent_span_id(self, trace_id: str, parent_id: Optional[str]) -> Optional[str]:
        # Caller holds the lock.
        if parent_id is not None:
            parent = self._live.get(parent_id)
            if parent is not None and parent.span_id:
                return parent.span_id
            # A parent that was already ended can still be referenced.
            ended_span_id = self._ended.get(parent_id)
            if ended_span_id:
                return ended_span_id
        return self._root_span_ids.get(trace_id)

    def _end(self, live: _LiveObservation) -> None:
        # An end time before the OTEL start would give a negative duration.
        if live.end_time is not None and live.end_time >= live.created_ms:
            live.obj.end(end_time=live.end_time * 1_000_000)
        else:
            live.obj.end()

    def _finalize(self, obs_id: str) -> None:
        # Caller holds the lock.
        live = self._live.pop(obs_id)
        self._ended[obs_id] = live.span_id
        while len(self._ended) > _ENDED_MEMORY:
            self._ended.popitem(last=False)
        try:
            self._end(live)
        except Exception:
            logger.exception("failed to end observation", extra={"observation_id": obs_id})

    def finalize_idle(self) -> int:
        cutoff = self._clock() - self._finalize_after_s
        with self._lock:
            idle = [obs_id for obs_id, live in self._live.items() if live.touched <= cutoff]
            for obs_id in idle:
                self._finalize(obs_id)
        if idle:
            logger.debug("ended idle observations", extra={"count": len(idle)})
        return len(idle)

    def flush(self) -> None:
        self.finalize_idle()
        self._client.flush()

    def shutdown(self) -> None:
        with self._lock:
            for obs_id in list(self._live):
                self._finalize(obs_id)
        self._client.shutdown()
