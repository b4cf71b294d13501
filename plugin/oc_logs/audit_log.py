"""Optional write-behind audit trail of everything sent to Langfuse.

One JSON line per record in ``audit-YYYY-MM-DD.jsonl`` (UTC date). Writing is
fire-and-forget: failures are logged and never reach the pipeline.
"""

from __future__ import annotations

import datetime
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

AUDIT_PREFIX = "audit-"
AUDIT_SUFFIX = ".jsonl"


def _safe_json_dumps(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return json.dumps({"unserializable": True, "repr": repr(obj)}, ensure_ascii=False, separators=(",", ":"))


def audit_filename(now: Optional[datetime.datetime] = None) -> str:
    now = now or datetime.datetime.now(tz=datetime.timezone.utc)
    return f"{AUDIT_PREFIX}{now.strftime('%Y-%m-%d')}{AUDIT_SUFFIX}"


class AuditLog:
    def __init__(
        self,
        directory: Path,
        *,
        enabled: bool = True,
        retention_days: int = 7,
        max_size_mb: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory)
        self.enabled = enabled
        self.retention_days = retention_days
        self.max_size_mb = max_size_mb
        self._clock = clock
        self._lock = threading.Lock()
        if enabled:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
            except OSError as err:
                # Retried on the next write.
                logger.warning("could not create audit directory", extra={"path": str(self.directory), "error": repr(err)})

    def current_file(self) -> Path:
        now = datetime.datetime.fromtimestamp(self._clock(), tz=datetime.timezone.utc)
        return self.directory / audit_filename(now)

    def record(self, entity_type: str, session_id: str, trace_id: str, data: JsonDict) -> None:
        if not self.enabled:
            return
        entry = {
            "timestamp": int(self._clock() * 1000),
            "entityType": entity_type,
            "sessionId": session_id,
            "traceId": trace_id,
            "data": data,
        }
        path = self.current_file()
        try:
            with self._lock:
                self.directory.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as f:
                    f.write(_safe_json_dumps(entry) + "\n")
        except OSError as err:
            logger.error("failed to write audit entry", extra={"path": str(path), "error": repr(err)})

    def _audit_files(self) -> List[Tuple[Path, float, int]]:
        out: List[Tuple[Path, float, int]] = []
        for p in self.directory.iterdir():
            if not (p.name.startswith(AUDIT_PREFIX) and p.name.endswith(AUDIT_SUFFIX)):
                continue
            try:
                st = p.stat()
            except OSError:
                continue
            out.append((p, st.st_mtime, st.st_size))
        return out

    def cleanup(self) -> int:
        """Delete files past the retention window, then oldest first while over the size cap.

        Returns the number of files removed.
        """
        if not self.directory.is_dir():
            return 0
        try:
            files = self._audit_files()
        except OSError as err:
            logger.error("failed to list audit directory", extra={"path": str(self.directory), "error": repr(err)})
            return 0

        removed = 0
        cutoff = self._clock() - self.retention_days * 86400
        kept: List[Tuple[Path, float, int]] = []
        for path, mtime, size in files:
            if mtime < cutoff and self._unlink(path):
                removed += 1
            else:
                kept.append((path, mtime, size))

        max_bytes = self.max_size_mb * 1024 * 1024
        total = sum(size for _p, _m, size in kept)
        for path, _mtime, size in sorted(kept, key=lambda t: t[1]):
            if total <= max_bytes:
                break
            if self._unlink(path):
                removed += 1
                total -= size

        if removed:
            logger.info("cleaned up audit files", extra={"removed": removed})
        return removed

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except OSError as err:
            logger.warning("failed to delete audit file", extra={"path": str(path), "error": repr(err)})
            return False
