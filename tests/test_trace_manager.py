"""Tests for the Langfuse-backed sink (oc_langfuse.trace_manager)."""

from __future__ import annotations

import itertools
from unittest.mock import MagicMock

import pytest

from oc_langfuse.records import GenerationRecord, SpanRecord, TraceRecord
from oc_langfuse.trace_manager import LangfuseSink
from oc_shared.config import LangfuseSettings


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _observation(span_id: str) -> MagicMock:
    obs = MagicMock(name=f"obs-{span_id}")
    obs.id = span_id
    return obs


@pytest.fixture
def client() -> MagicMock:
    counter = itertools.count(1)
    client = MagicMock(name="langfuse")
    client.start_span.side_effect = lambda **kw: _observation(f"{next(counter):016x}")
    client.start_observation.side_effect = lambda **kw: _observation(f"{next(counter):016x}")
    return client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lf_sink(client: MagicMock, clock: FakeClock) -> LangfuseSink:
    return LangfuseSink(client, finalize_after_s=60.0, clock=clock)


class TestCreate:
    def test_missing_keys_disable_sink(self) -> None:
        settings = LangfuseSettings(public_key=None, secret_key="sk", base_url="https://example.com")
        assert LangfuseSink.create(settings) is None


class TestTrace:
    def test_create_trace_sets_attributes_on_root(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_trace(TraceRecord(id="a" * 32, session_id="S1", name="T"))
        kwargs = client.start_span.call_args.kwargs
        assert kwargs["trace_context"] == {"trace_id": "a" * 32}
        first_root = client.start_span.call_args_list[0]
        assert first_root.kwargs["name"] == "T"

    def test_root_becomes_default_parent(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_trace(TraceRecord(id="t1", session_id="S1", name="T"))
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="user-message"))
        ctx = client.start_span.call_args.kwargs["trace_context"]
        assert ctx == {"trace_id": "t1", "parent_span_id": f"{1:016x}"}

    def test_title_change_keeps_first_root_as_parent(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_trace(TraceRecord(id="t1", session_id="S1", name="T"))
        lf_sink.create_trace(TraceRecord(id="t1", session_id="S1", name="T2"))
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="user-message"))
        ctx = client.start_span.call_args.kwargs["trace_context"]
        assert ctx["parent_span_id"] == f"{1:016x}"


class TestObservations:
    def test_second_call_updates_same_observation(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="user-message"))
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="user-message", input="hi"))
        assert client.start_span.call_count == 1
        assert lf_sink.live_count == 1
        lf_sink._live["o1"].obj.update.assert_called_once_with(input="hi")

    def test_generation_uses_start_observation(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_generation(
            GenerationRecord(
                id="g1",
                trace_id="t1",
                name="assistant-response",
                model="m",
                usage_details={"input": 1},
                cost_details={"total": 0.5},
            )
        )
        kwargs = client.start_observation.call_args.kwargs
        assert kwargs["as_type"] == "generation"
        assert kwargs["model"] == "m"
        assert kwargs["usage_details"] == {"input": 1}
        assert kwargs["cost_details"] == {"total": 0.5}

    def test_child_parented_to_live_observation(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_generation(GenerationRecord(id="g1", trace_id="t1", name="assistant-response"))
        lf_sink.create_span(SpanRecord(id="s1", trace_id="t1", name="tool-bash", parent_observation_id="g1"))
        ctx = client.start_span.call_args.kwargs["trace_context"]
        assert ctx["parent_span_id"] == lf_sink._live["g1"].span_id

    def test_record_without_id_ends_immediately(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_span(SpanRecord(trace_id="t1", name="tool-read"))
        assert lf_sink.live_count == 0
        assert client.start_span.call_count == 1

    def test_start_time_goes_to_metadata(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="x", start_time=0))
        metadata = client.start_span.call_args.kwargs["metadata"]
        assert metadata["startTime"].startswith("1970-01-01T00:00:00")


class TestFinalize:
    def test_flush_ends_idle_observations(self, lf_sink: LangfuseSink, client: MagicMock, clock: FakeClock) -> None:
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="a"))
        obs = lf_sink._live["o1"].obj
        clock.now = 30.0
        lf_sink.create_span(SpanRecord(id="o2", trace_id="t1", name="b"))
        clock.now = 61.0
        lf_sink.flush()
        obs.end.assert_called_once()
        assert list(lf_sink._live) == ["o2"]
        client.flush.assert_called_once()

    def test_updates_after_end_are_dropped(self, lf_sink: LangfuseSink, client: MagicMock, clock: FakeClock) -> None:
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="a"))
        clock.now = 120.0
        lf_sink.flush()
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="a", input="late"))
        assert client.start_span.call_count == 1
        assert lf_sink.live_count == 0

    def test_end_time_applied_at_finalize(self, lf_sink: LangfuseSink) -> None:
        far_future_ms = 4_102_444_800_000  # 2100-01-01
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="a", end_time=far_future_ms))
        obs = lf_sink._live["o1"].obj
        obs.end.assert_not_called()
        lf_sink.shutdown()
        obs.end.assert_called_once_with(end_time=far_future_ms * 1_000_000)

    def test_shutdown_ends_everything(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="a"))
        lf_sink.create_generation(GenerationRecord(id="g1", trace_id="t1", name="b"))
        lf_sink.shutdown()
        assert lf_sink.live_count == 0
        client.shutdown.assert_called_once()

    def test_client_errors_propagate_for_retry(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        client.flush.side_effect = ConnectionError("down")
        with pytest.raises(ConnectionError):
            lf_sink.flush()


class TestParentingAfterFinalize:
    def test_child_of_ended_observation_keeps_its_parent(
        self, lf_sink: LangfuseSink, client: MagicMock, clock: FakeClock
    ) -> None:
        lf_sink.create_trace(TraceRecord(id="t1", session_id="S1", name="T"))
        lf_sink.create_span(SpanRecord(id="user-obs", trace_id="t1", name="user-message"))
        user_span_id = lf_sink._live["user-obs"].span_id
        clock.now = 75.0
        lf_sink.flush()
        assert lf_sink.live_count == 0

        lf_sink.create_generation(
            GenerationRecord(id="gen-obs", trace_id="t1", name="assistant-response", parent_observation_id="user-obs")
        )
        ctx = client.start_observation.call_args.kwargs["trace_context"]
        assert ctx["parent_span_id"] == user_span_id == f"{2:016x}"

    def test_unknown_parent_falls_back_to_root(self, lf_sink: LangfuseSink, client: MagicMock) -> None:
        lf_sink.create_trace(TraceRecord(id="t1", session_id="S1", name="T"))
        lf_sink.create_span(SpanRecord(id="o1", trace_id="t1", name="tool-bash", parent_observation_id="missing"))
        ctx = client.start_span.call_args.kwargs["trace_context"]
        assert ctx["parent_span_id"] == f"{1:016x}"


class TestRootMemory:
    def test_root_span_ids_are_bounded(
        self, lf_sink: LangfuseSink, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("oc_langfuse.trace_manager._ROOT_MEMORY", 2)
        for trace_id in ("t1", "t2", "t3"):
            lf_sink.create_trace(TraceRecord(id=trace_id, session_id=trace_id, name="T"))
        assert list(lf_sink._root_span_ids) == ["t2", "t3"]

    def test_title_update_refreshes_recency(
        self, lf_sink: LangfuseSink, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("oc_langfuse.trace_manager._ROOT_MEMORY", 2)
        lf_sink.create_trace(TraceRecord(id="t1", session_id="t1", name="T"))
        lf_sink.create_trace(TraceRecord(id="t2", session_id="t2", name="T"))
        lf_sink.create_trace(TraceRecord(id="t1", session_id="t1", name="T1b"))
        lf_sink.create_trace(TraceRecord(id="t3", session_id="t3", name="T"))
        assert list(lf_sink._root_span_ids) == ["t1", "t3"]
        assert lf_sink._root_span_ids["t1"] == f"{1:016x}"
