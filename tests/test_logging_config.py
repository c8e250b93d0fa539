"""Tests for logging setup."""

import io
import logging

import pytest

from npu_assistant.utils import get_logger, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    pil_level = logging.getLogger("PIL").level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("PIL").setLevel(pil_level)


def test_level_from_environment(monkeypatch):
    monkeypatch.setenv("NPU_ASSISTANT_LOG_LEVEL", "debug")

    setup_logging(stream=io.StringIO())

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("PIL").level == logging.WARNING


def test_explicit_level_wins_and_records_reach_stream(monkeypatch):
    monkeypatch.setenv("NPU_ASSISTANT_LOG_LEVEL", "DEBUG")
    stream = io.StringIO()

    setup_logging("warning", stream=stream)
    logger = get_logger("npu_assistant.runtime.manager")
    logger.info("[Lifecycle] hidden")
    logger.warning("[Lifecycle] Failed to load '%s'", "phi")

    assert logger is logging.getLogger("npu_assistant.runtime.manager")
    output = stream.getvalue()
    assert "hidden" not in output
    assert "npu_assistant.runtime.manager - WARNING - [Lifecycle] Failed to load 'phi'" in output
