from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from oc_shared.ipc import TailState, load_tail_state, read_new_lines, save_tail_state, tail_jsonl


def _append(path: Path, *objs: Any, raw: str = "") -> None:
    with path.open("a", encoding="utf-8") as f:
        for obj in objs:
            f.write(json.dumps(obj) + "\n")
        f.write(raw)


class TestReadNewLines:
    def test_missing_file(self, tmp_path: Path) -> None:
        assert read_new_lines(tmp_path / "nope.jsonl", TailState()) == []

    def test_skips_backlog_by_default(self, tmp_path: Path) -> None:
        path = tmp_path / "ipc.jsonl"
        _append(path, {"n": 1})
        state = TailState()
        assert read_new_lines(path, state) == []
        _append(path, {"n": 2})
        assert read_new_lines(path, state) == [{"n": 2}]

    def test_replays_backlog_when_asked(self, tmp_path: Path) -> None:
        path = tmp_path / "ipc.jsonl"
        _append(path, {"n": 1}, {"n": 2})
        assert read_new_lines(path, TailState(), start_at_end=False) == [{"n": 1}, {"n": 2}]

    def test_partial_line_waits_for_newline(self, tmp_path: Path) -> None:
        path = tmp_path / "ipc.jsonl"
        path.write_text("", encoding="utf-8")
        state = TailState()
        read_new_lines(path, state)
        _append(path, {"n": 1}, raw='{"n": ')
        assert read_new_lines(path, state) == [{"n": 1}]
        _append(path, raw="2}\n")
        assert read_new_lines(path, state) == [{"n": 2}]

    def test_malformed_and_non_object_lines_are_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "ipc.jsonl"
        path.write_text("", encoding="utf-8")
        state = TailState()
        read_new_lines(path, state)
        _append(path, raw='not json\n[1, 2]\n\n{"ok": true}\n')
        assert read_new_lines(path, state) == [{"ok": True}]

    def test_truncation_resets_offset(self, tmp_path: Path) -> None:
        path = tmp_path / "ipc.jsonl"
        state = TailState()
        _append(path, {"n": 1}, {"n": 2})
        read_new_lines(path, state, start_at_end=False)
        path.write_text(json.dumps({"n": 3}) + "\n", encoding="utf-8")
        assert read_new_lines(path, state) == [{"n": 3}]


class TestTailState:
    def test_round_trip(self, tmp_path: Path) -> None:
        state_file = tmp_path / "state" / "tail.json"
        save_tail_state(state_file, TailState(offset=42, inode=7))
        assert load_tail_state(state_file) == TailState(offset=42, inode=7)

    @pytest.mark.parametrize("content", ["", "[]", '{"offset": -1}'])
    def test_bad_state(self, tmp_path: Path, content: str) -> None:
        state_file = tmp_path / "tail.json"
        state_file.write_text(content, encoding="utf-8")
        loaded = load_tail_state(state_file)
        assert loaded is None or loaded.offset == 0


class TestTailJsonl:
    @pytest.mark.asyncio
    async def test_follows_appends_and_saves_offset(self, tmp_path: Path) -> None:
        path = tmp_path / "ipc.jsonl"
        state_file = tmp_path / "ipc.tailstate.json"
        path.write_text("", encoding="utf-8")
        seen: List[Dict[str, Any]] = []

        async def consume() -> None:
            async for obj in tail_jsonl(path, poll_interval_s=0.01, state_file=state_file):
                seen.append(obj)
                if len(seen) == 2:
                    return

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.03)
        _append(path, {"n": 1}, {"n": 2})
        await asyncio.wait_for(task, timeout=2.0)

        assert seen == [{"n": 1}, {"n": 2}]
        state = load_tail_state(state_file)
        assert state is not None
        assert state.offset == path.stat().st_size

    @pytest.mark.asyncio
    async def test_resumes_from_saved_state(self, tmp_path: Path) -> None:
        path = tmp_path / "ipc.jsonl"
        state_file = tmp_path / "ipc.tailstate.json"
        _append(path, {"n": 1})
        save_tail_state(state_file, TailState(offset=path.stat().st_size, inode=path.stat().st_ino))
        _append(path, {"n": 2})

        agen = tail_jsonl(path, poll_interval_s=0.01, state_file=state_file)
        first = await asyncio.wait_for(agen.__anext__(), timeout=2.0)
        await agen.aclose()
        assert first == {"n": 2}
