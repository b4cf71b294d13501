from .debounce import DebounceScheduler
from .ledger import ProcessedKeys
from .processor import EventProcessor
from .queue import BoundedEventQueue
from .registry import MessageInfo, SessionRegistry, TraceState

__all__ = [
    "BoundedEventQueue",
    "DebounceScheduler",
    "EventProcessor",
    "MessageInfo",
    "ProcessedKeys",
    "SessionRegistry",
    "TraceState",
]
