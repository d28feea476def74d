"""
Unit tests for the agent driver: start, wait for shutdown, stop.
"""

import logging
import threading
import time

import pytest

from engine_agent.config import AgentConfig
from engine_agent.core.errors import ImagePullError
from engine_agent.main import build_manager, run
from engine_agent.utils.logger import ROOT_LOGGER_NAME


@pytest.fixture
def config(tmp_path):
    return AgentConfig(
        model_dir=str(tmp_path / "models"),
        engine_image="img:latest",
        engine_name="c1",
        model_name="m.bin",
        monitor_interval=60,
        stop_margin=2,
        pull_backoff=0,
    )


def _set_event():
    event = threading.Event()
    event.set()
    return event


def _shutdown_after_start(runtime):
    """Shutdown event that fires once the engine container has started."""
    shutdown = threading.Event()
    original = runtime.start_container

    def start_then_signal(container_id, deadline=None):
        original(container_id, deadline)
        shutdown.set()

    runtime.start_container = start_then_signal
    return shutdown


def test_run_starts_and_stops_engine(config, runtime):
    code = run(config, runtime=runtime, shutdown=_shutdown_after_start(runtime), install_signals=False)

    assert code == 0
    ops = [c[0] for c in runtime.calls]
    assert ops.index("start") < ops.index("stop")
    assert runtime.containers["c1"]["state"] == "exited"
    assert runtime.containers["c1"]["kwargs"]["command"] == ["--model", "/models/m.bin"]
    assert runtime.containers["c1"]["kwargs"]["mounts"][0].host_path == config.model_dir


def test_run_survives_start_failure(config, runtime):
    runtime.pull_errors = [ImagePullError("denied", image="img:latest", retryable=False)]

    code = run(config, runtime=runtime, shutdown=_set_event(), install_signals=False)

    assert code == 0
    assert runtime.count("stop") == 0
    assert "c1" not in runtime.containers


def test_shutdown_interrupts_pull_backoff(config, runtime):
    config = config.override(pull_backoff=4.0)
    runtime.pull_errors = [ImagePullError("registry timeout", image="img:latest") for _ in range(3)]

    t0 = time.monotonic()
    code = run(config, runtime=runtime, shutdown=_set_event(), install_signals=False)

    assert code == 0
    assert time.monotonic() - t0 < 3.0
    assert "c1" not in runtime.containers


def test_run_does_not_stop_foreign_container(config, runtime):
    runtime.add_container("c1", "someone-else:1.0")

    run(config, runtime=runtime, shutdown=_set_event(), install_signals=False)

    assert runtime.containers["c1"]["state"] == "running"


def test_run_detaches_log_handlers(config, runtime):
    run(config, runtime=runtime, shutdown=_set_event(), install_signals=False)

    assert logging.getLogger(ROOT_LOGGER_NAME).handlers == []


def test_build_manager_uses_config(config, runtime):
    manager = build_manager(config, runtime=runtime)

    assert manager.stop_grace == config.stop_grace
    assert manager.default_mounts[0].container_path == "/models"
