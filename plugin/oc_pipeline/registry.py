from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from langfuse import Langfuse

from oc_shared.event_types import ModelParams


DEFAULT_TITLE = "OpenCode Session"


def trace_id_for_session(session_id: str) -> str:
    # Seeded, so a restarted exporter lands on the same trace.
    return Langfuse.create_trace_id(seed=session_id)


@dataclass(frozen=True)
class MessageInfo:
    observation_id: str
    role: str
    model: Optional[str] = None
    parent_observation_id: Optional[str] = None


@dataclass
class TraceState:
    session_id: str
    trace_id: str
    title: str = DEFAULT_TITLE
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    messages: Dict[str, MessageInfo] = field(default_factory=dict)  # message id -> info
    spans: Dict[str, str] = field(default_factory=dict)  # part id / tool call id -> span id
    pending_params: Optional[ModelParams] = None

    @classmethod
    def for_session(cls, session_id: str, title: Optional[str] = None) -> "TraceState":
        return cls(session_id=session_id, trace_id=trace_id_for_session(session_id), title=title or DEFAULT_TITLE)

    def take_pending_params(self) -> Optional[ModelParams]:
        params, self.pending_params = self.pending_params, None
        return params


class SessionRegistry:
    """Session id -> TraceState.

    All methods are synchronous so read-modify-write sequences cannot
    interleave with other coroutines.
    """

    def __init__(self) -> None:
        self._states: Dict[str, TraceState] = {}

    def get(self, session_id: str) -> Optional[TraceState]:
        return self._states.get(session_id)

    def set(self, state: TraceState) -> None:
        self._states[state.session_id] = state

    def update(self, session_id: str, fn: Callable[[TraceState], None]) -> Optional[TraceState]:
        state = self._states.get(session_id)
        if state is None:
            return None
        fn(state)
        return state

    def delete(self, session_id: str) -> bool:
        return self._states.pop(session_id, None) is not None

    def has(self, session_id: str) -> bool:
        return session_id in self._states

    def all(self) -> List[TraceState]:
        return list(self._states.values())

    def clear(self) -> None:
        self._states.clear()

    def __len__(self) -> int:
        return len(self._states)
