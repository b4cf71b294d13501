from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional


logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]


@dataclass
class TailState:
    offset: int = 0
    inode: Optional[int] = None


def _stat_inode(path: Path) -> Optional[int]:
    try:
        return path.stat().st_ino
    except OSError:
        return None


def load_tail_state(state_file: Path) -> Optional[TailState]:
    try:
        raw = json.loads(state_file.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(raw, dict):
        return None
    state = TailState()
    offset = raw.get("offset")
    inode = raw.get("inode")
    if isinstance(offset, int) and offset >= 0:
        state.offset = offset
    if isinstance(inode, int):
        state.inode = inode
    return state


def save_tail_state(state_file: Path, state: TailState) -> None:
    try:
        state_file.parent.mkdir(parents=True, exist_ok=True)
        state_file.write_text(json.dumps({"offset": state.offset, "inode": state.inode}), encoding="utf-8")
    except OSError as err:
        logger.debug("could not persist tail state", extra={"state_file": str(state_file), "error": repr(err)})


def read_new_lines(path: Path, state: TailState, *, start_at_end: bool = True) -> List[JsonDict]:
    """Read complete JSON objects appended since ``state.offset``.

    Updates ``state`` in place. Truncation resets the offset, and so does an
    inode change (the file was replaced). Lines that are not JSON objects are
    skipped.
    """
    if not path.exists():
        return []

    inode = _stat_inode(path)
    if state.inode is None:
        state.inode = inode
        # First sight of the file: skip the backlog unless asked to replay it.
        if start_at_end and state.offset == 0:
            state.offset = path.stat().st_size
    elif inode is not None and inode != state.inode:
        state.inode = inode
        state.offset = 0

    if path.stat().st_size < state.offset:
        state.offset = 0

    out: List[JsonDict] = []
    # Offsets are byte positions, so the file is read in binary and decoded per line.
    with path.open("rb") as f:
        f.seek(state.offset)
        while True:
            line = f.readline()
            if not line:
                break
            if not line.endswith(b"\n"):
                # Partial write; pick it up on the next poll.
                break
            state.offset = f.tell()
            raw = line.decode("utf-8", errors="replace").strip()
            if not raw:
                continue
            try:
                obj = json.loads(raw)
            except ValueError:
                logger.debug("skipping malformed ipc line", extra={"line": raw[:200]})
                continue
            if isinstance(obj, dict):
                out.append(obj)
    return out


async def tail_jsonl(
    path: Path,
    *,
    poll_interval_s: float = 0.2,
    start_at_end: bool = True,
    state_file: Optional[Path] = None,
) -> AsyncIterator[JsonDict]:
    """Yield JSON objects appended to ``path``, following truncation and rotation.

    Runs until the consumer stops iterating or the task is cancelled. The byte
    offset is saved to ``state_file`` after every read so a restart resumes
    where the previous run stopped.
    """
    state = TailState()
    if state_file:
        loaded = load_tail_state(state_file)
        if loaded:
            state = loaded

    while True:
        try:
            batch = read_new_lines(path, state, start_at_end=start_at_end)
        except OSError as err:
            logger.warning("ipc read failed", extra={"path": str(path), "error": repr(err)})
            batch = []

        if batch and state_file:
            save_tail_state(state_file, state)
        for obj in batch:
            yield obj

        if not batch:
            await asyncio.sleep(poll_interval_s)
