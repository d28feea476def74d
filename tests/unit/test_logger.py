"""
Unit tests for logging configuration.
"""

import io
import json
import logging

import pytest

from engine_agent.utils.logger import (
    ROOT_LOGGER_NAME,
    JsonFormatter,
    configure_logging,
    get_logger,
    shutdown_logging,
)


@pytest.fixture(autouse=True)
def _detach():
    yield
    shutdown_logging()


def test_json_formatter_merges_extra():
    record = logging.LogRecord("engine-agent.engine", logging.INFO, __file__, 1, "started %s", ("c1",), None)
    record.container = "c1"

    entry = json.loads(JsonFormatter().format(record))

    assert entry["msg"] == "started c1"
    assert entry["level"] == "info"
    assert entry["container"] == "c1"


def test_configure_writes_log_file(tmp_path):
    log_file = tmp_path / "logs" / "agent.log"
    configure_logging("DEBUG", str(log_file))

    get_logger("engine").debug("hello")
    shutdown_logging()

    assert "hello" in log_file.read_text()


def test_configure_is_idempotent(monkeypatch):
    monkeypatch.delenv("LOG_FILE", raising=False)
    configure_logging()
    configure_logging()

    assert len(logging.getLogger(ROOT_LOGGER_NAME).handlers) == 1


def test_unknown_level_falls_back_to_info():
    logger = configure_logging("chatty")

    assert logger.level == logging.INFO


def test_shutdown_with_closed_stream(monkeypatch):
    stream = io.StringIO()
    monkeypatch.setattr("sys.stdout", stream)
    monkeypatch.delenv("LOG_FILE", raising=False)
    configure_logging()
    stream.close()

    shutdown_logging()

    assert logging.getLogger(ROOT_LOGGER_NAME).handlers == []
