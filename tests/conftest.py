from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator

import pytest

from fakes import RecordingSink, SleepRecorder
from oc_shared.log_setup import PACKAGE_LOGGERS


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def no_sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def restore_loggers() -> Iterator[None]:
    saved = {}
    for name in PACKAGE_LOGGERS:
        logger = logging.getLogger(name)
        saved[name] = (list(logger.handlers), logger.propagate, logger.level)
    yield
    for name, (handlers, propagate, level) in saved.items():
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers = handlers
        logger.propagate = propagate
        logger.setLevel(level)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Strip exporter variables from the environment; returns the config dir."""
    for key in list(os.environ):
        if key.startswith(("LANGFUSE_", "OPENCODE_")):
            monkeypatch.delenv(key, raising=False)
    config_dir = tmp_path / "opencode"
    config_dir.mkdir()
    monkeypatch.setenv("OPENCODE_CONFIG_DIR", str(config_dir))
    return config_dir
