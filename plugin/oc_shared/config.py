from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


EXPORT_MODES = ("full", "metadata_only", "off")

DEFAULT_BASE_URL = "https://cloud.langfuse.com"


def _parse_dotenv(path: Path) -> Dict[str, str]:
    if not path.exists() or not path.is_file():
        return {}
    out: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip().strip('"').strip("'")
        if key:
            out[key] = val
    return out


def _home_opencode_dir() -> Path:
    return Path.home() / ".opencode"


def resolve_opencode_config_dir() -> Path:
    raw = (os.environ.get("OPENCODE_CONFIG_DIR") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return _home_opencode_dir()


def parse_redact_patterns(raw: Optional[str]) -> Tuple[List["re.Pattern[str]"], List[str]]:
    """Compile comma-separated patterns; returns (compiled, invalid)."""
    compiled: List["re.Pattern[str]"] = []
    invalid: List[str] = []
    if not raw:
        return compiled, invalid
    for part in raw.split(","):
        pattern = part.strip()
        if not pattern:
            continue
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error:
            invalid.append(pattern)
    return compiled, invalid


def _as_int(raw: Optional[str], default: int) -> int:
    try:
        return int(str(raw).strip()) if raw is not None and str(raw).strip() else default
    except ValueError:
        return default


def _as_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or not str(raw).strip():
        return default
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LangfuseSettings:
    public_key: Optional[str]
    secret_key: Optional[str]
    base_url: str
    flush_interval_ms: int = 5000


@dataclass(frozen=True)
class PipelineSettings:
    queue_capacity: int = 1000
    debounce_ms: int = 10_000
    dedup_max_keys: Optional[int] = None
    retry_attempts: int = 5
    retry_base_ms: int = 1000
    retry_max_ms: int = 30_000


@dataclass(frozen=True)
class Settings:
    plugin_dir: Path
    opencode_config_dir: Path
    langfuse: LangfuseSettings
    pipeline: PipelineSettings
    export_mode: str
    redact_patterns: List["re.Pattern[str]"]
    invalid_patterns: List[str]
    spool_dir: Path
    log_dir: Path
    max_spool_size_mb: int
    retention_days: int
    trace_name_prefix: str
    verbose: bool
    enabled: bool
    audit_log: bool
    plugin_json: Dict[str, Any] = field(default_factory=dict)


def _load_plugin_json(config_dir: Path) -> Dict[str, Any]:
    path = config_dir / "opencode.json"
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    block = data.get("langfuse") if isinstance(data, dict) else None
    return block if isinstance(block, dict) else {}


def load_settings(plugin_dir: Path) -> Settings:
    plugin_dir = plugin_dir.resolve()
    config_dir = resolve_opencode_config_dir().resolve()

    env_from_plugin = _parse_dotenv(plugin_dir / ".env")
    plugin_json = _load_plugin_json(config_dir)

    def get(key: str, json_key: Optional[str] = None) -> Optional[str]:
        val = env_from_plugin.get(key) or os.environ.get(key)
        if val:
            return val.strip()
        if json_key and plugin_json.get(json_key) is not None:
            return str(plugin_json[json_key]).strip()
        return None

    base_url = (get("LANGFUSE_BASE_URL") or get("LANGFUSE_HOST", "host") or DEFAULT_BASE_URL).rstrip("/")

    export_mode = (get("OPENCODE_LANGFUSE_EXPORT_MODE", "exportMode") or "full").lower()
    patterns, invalid = parse_redact_patterns(get("OPENCODE_LANGFUSE_REDACT_REGEX", "redactRegex"))

    spool_raw = get("OPENCODE_LANGFUSE_SPOOL_DIR", "spoolDir")
    log_raw = get("OPENCODE_LANGFUSE_LOG_DIR", "logDir")
    dedup_raw = get("OPENCODE_LANGFUSE_DEDUP_MAX_KEYS")
    dedup_max = _as_int(dedup_raw, 0)

    return Settings(
        plugin_dir=plugin_dir,
        opencode_config_dir=config_dir,
        langfuse=LangfuseSettings(
            public_key=get("LANGFUSE_PUBLIC_KEY", "publicKey"),
            secret_key=get("LANGFUSE_SECRET_KEY", "secretKey"),
            base_url=base_url,
            flush_interval_ms=_as_int(get("OPENCODE_LANGFUSE_FLUSH_INTERVAL", "flushInterval"), 5000),
        ),
        pipeline=PipelineSettings(
            queue_capacity=max(1, _as_int(get("OPENCODE_LANGFUSE_QUEUE_CAPACITY"), 1000)),
            debounce_ms=max(0, _as_int(get("OPENCODE_LANGFUSE_DEBOUNCE_MS"), 10_000)),
            dedup_max_keys=dedup_max if dedup_max > 0 else None,
            retry_attempts=max(1, _as_int(get("OPENCODE_LANGFUSE_RETRY_ATTEMPTS"), 5)),
            retry_base_ms=max(0, _as_int(get("OPENCODE_LANGFUSE_RETRY_BASE_MS"), 1000)),
            retry_max_ms=max(0, _as_int(get("OPENCODE_LANGFUSE_RETRY_MAX_MS"), 30_000)),
        ),
        export_mode=export_mode,
        redact_patterns=patterns,
        invalid_patterns=invalid,
        spool_dir=Path(spool_raw).expanduser() if spool_raw else config_dir / "langfuse-spool",
        log_dir=Path(log_raw).expanduser() if log_raw else config_dir / "langfuse-exporter" / "logs",
        max_spool_size_mb=_as_int(get("OPENCODE_LANGFUSE_MAX_SPOOL_MB", "maxSpoolSizeMB"), 100),
        retention_days=_as_int(get("OPENCODE_LANGFUSE_RETENTION_DAYS", "retentionDays"), 7),
        trace_name_prefix=get("OPENCODE_LANGFUSE_TRACE_PREFIX", "traceNamePrefix") or "",
        verbose=_as_bool(get("OPENCODE_LANGFUSE_VERBOSE", "verbose"), False),
        enabled=_as_bool(get("OPENCODE_LANGFUSE_ENABLED", "enabled"), True),
        audit_log=_as_bool(get("OPENCODE_LANGFUSE_AUDIT_LOG", "auditLog"), False),
        plugin_json=plugin_json,
    )


def validate_settings(settings: Settings) -> List[str]:
    errors: List[str] = []
    if settings.export_mode not in EXPORT_MODES:
        errors.append(
            f"OPENCODE_LANGFUSE_EXPORT_MODE must be one of {', '.join(EXPORT_MODES)} (got {settings.export_mode!r})"
        )
    if settings.export_mode != "off":
        if not settings.langfuse.public_key:
            errors.append("LANGFUSE_PUBLIC_KEY is required")
        if not settings.langfuse.secret_key:
            errors.append("LANGFUSE_SECRET_KEY is required")
    return errors
