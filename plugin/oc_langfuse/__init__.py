from .client import RetryPolicy, SinkClient
from .records import GenerationRecord, SpanRecord, TraceRecord, TraceSink
from .service import EventMapper
from .trace_manager import LangfuseSink

__all__ = [
    "EventMapper",
    "GenerationRecord",
    "LangfuseSink",
    "RetryPolicy",
    "SinkClient",
    "SpanRecord",
    "TraceRecord",
    "TraceSink",
]
