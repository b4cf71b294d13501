from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class TraceRecord:
    id: str
    session_id: str
    name: str
    input: Any = None
    output: Any = None
    metadata: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None


@dataclass(frozen=True)
class GenerationRecord:
    trace_id: str
    name: str
    id: Optional[str] = None
    parent_observation_id: Optional[str] = None
    model: Optional[str] = None
    model_parameters: Optional[Dict[str, Any]] = None
    input: Any = None
    output: Any = None
    usage_details: Optional[Dict[str, int]] = None
    cost_details: Optional[Dict[str, float]] = None
    metadata: Optional[Dict[str, Any]] = None
    start_time: Optional[int] = None  # ms since epoch
    end_time: Optional[int] = None


@dataclass(frozen=True)
class SpanRecord:
    trace_id: str
    name: str
    id: Optional[str] = None
    parent_observation_id: Optional[str] = None
    input: Any = None
    output: Any = None
    metadata: Optional[Dict[str, Any]] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None


class TraceSink(Protocol):
    """Downstream collaborator. Creation calls are create-or-update by id."""

    def create_trace(self, record: TraceRecord) -> None: ...

    def create_generation(self, record: GenerationRecord) -> None: ...

    def create_span(self, record: SpanRecord) -> None: ...

    def flush(self) -> None: ...

    def shutdown(self) -> None: ...
