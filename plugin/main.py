from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

from oc_pipeline.runtime import PipelineRuntime
from oc_pipeline.source import convert_line
from oc_shared.config import Settings, load_settings, validate_settings
from oc_shared.errors import ConfigurationError
from oc_shared.ipc import tail_jsonl
from oc_shared.log_setup import configure_logging


logger = logging.getLogger("main")


def _resolve_plugin_dir() -> Path:
    raw = (os.environ.get("OPENCODE_LANGFUSE_PLUGIN_DIR") or "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return Path(__file__).parent.resolve()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opencode-langfuse-exporter",
        description="Export opencode session events to Langfuse.",
    )
    parser.add_argument("--ipc", required=True, help="Path to JSONL IPC file")
    parser.add_argument(
        "--from-start",
        action="store_true",
        help="Replay the IPC file from the beginning instead of only new lines",
    )
    return parser


def check_settings(settings: Settings) -> None:
    for pattern in settings.invalid_patterns:
        logger.warning("invalid redact pattern ignored", extra={"pattern": pattern})
    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error("configuration error", extra={"error": error})
        raise ConfigurationError("; ".join(errors))


async def pump(runtime: PipelineRuntime, ipc_file: Path, *, from_start: bool, stop: asyncio.Event) -> None:
    """Feed IPC lines into the runtime until ``stop`` is set."""
    lines = tail_jsonl(
        ipc_file,
        start_at_end=not from_start,
        state_file=ipc_file.with_suffix(".tailstate.json"),
    )
    try:
        async for obj in lines:
            if stop.is_set():
                break
            event = convert_line(obj)
            if event is None:
                continue
            if not await runtime.offer(event):
                break
    finally:
        await lines.aclose()


async def run(settings: Settings, ipc_file: Path, *, from_start: bool = False) -> int:
    runtime = PipelineRuntime.build(settings)
    if not runtime.client.is_connected:
        print(
            "[opencode-langfuse] Langfuse disabled "
            f"(public_key_set={bool(settings.langfuse.public_key)} "
            f"secret_key_set={bool(settings.langfuse.secret_key)} base_url={settings.langfuse.base_url})",
            file=sys.stderr,
        )
    else:
        print(f"[opencode-langfuse] Langfuse enabled (base_url={settings.langfuse.base_url})", file=sys.stderr)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread.
            logger.debug("signal handler not installed", extra={"signal": int(sig)})

    await runtime.start()
    pump_task = asyncio.create_task(pump(runtime, ipc_file, from_start=from_start, stop=stop))
    stop_task = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({pump_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.set()
        for task in (pump_task, stop_task):
            task.cancel()
        await asyncio.gather(pump_task, stop_task, return_exceptions=True)
        await runtime.stop(drain=True)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = load_settings(_resolve_plugin_dir())
    configure_logging(settings.log_dir, verbose=settings.verbose)

    if not settings.enabled:
        logger.info("exporter disabled via configuration")
        return 0
    if settings.export_mode == "off":
        logger.info("export mode is off, exporter inactive")
        return 0
    try:
        check_settings(settings)
    except ConfigurationError as err:
        print(f"[opencode-langfuse] configuration error: {err}", file=sys.stderr)
        return 2

    ipc_file = Path(args.ipc).expanduser().resolve()
    ipc_file.parent.mkdir(parents=True, exist_ok=True)
    ipc_file.open("a", encoding="utf-8").close()

    return asyncio.run(run(settings, ipc_file, from_start=args.from_start))


if __name__ == "__main__":
    raise SystemExit(main())
