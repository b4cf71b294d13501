"""Tests for oc_pipeline.registry."""

from __future__ import annotations

from oc_pipeline.registry import DEFAULT_TITLE, SessionRegistry, TraceState, trace_id_for_session
from oc_shared.event_types import ModelParams


def test_trace_id_is_deterministic() -> None:
    first = trace_id_for_session("ses_abc")
    assert first == trace_id_for_session("ses_abc")
    assert first != trace_id_for_session("ses_xyz")
    assert len(first) == 32
    int(first, 16)


def test_for_session_defaults_title() -> None:
    state = TraceState.for_session("s1")
    assert state.title == DEFAULT_TITLE
    assert state.trace_id == trace_id_for_session("s1")
    assert state.messages == {}
    assert state.spans == {}


def test_take_pending_params_is_single_use() -> None:
    state = TraceState.for_session("s1")
    state.pending_params = ModelParams(temperature=0.2)
    assert state.take_pending_params() == ModelParams(temperature=0.2)
    assert state.take_pending_params() is None


class TestSessionRegistry:
    def test_set_get_has_delete(self) -> None:
        registry = SessionRegistry()
        state = TraceState.for_session("s1", "Title")
        registry.set(state)
        assert registry.has("s1")
        assert registry.get("s1") is state
        assert registry.delete("s1") is True
        assert registry.delete("s1") is False
        assert registry.get("s1") is None

    def test_update_mutates_in_place(self) -> None:
        registry = SessionRegistry()
        registry.set(TraceState.for_session("s1"))

        def rename(state: TraceState) -> None:
            state.title = "renamed"

        updated = registry.update("s1", rename)
        assert updated is not None
        assert registry.get("s1").title == "renamed"

    def test_update_missing_returns_none(self) -> None:
        registry = SessionRegistry()
        assert registry.update("nope", lambda s: None) is None

    def test_all_and_clear(self) -> None:
        registry = SessionRegistry()
        registry.set(TraceState.for_session("a"))
        registry.set(TraceState.for_session("b"))
        assert {s.session_id for s in registry.all()} == {"a", "b"}
        registry.clear()
        assert len(registry) == 0
