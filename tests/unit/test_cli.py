"""
Unit tests for the command-line interface.
"""

import json

import pytest

from engine_agent import cli
from engine_agent.utils.logger import shutdown_logging


@pytest.fixture(autouse=True)
def _wired(monkeypatch, manager, tmp_path, capsys):
    # handlers bound to the captured stdout must be detached before capsys closes it
    monkeypatch.setattr(cli, "build_manager", lambda config: manager)
    monkeypatch.setenv("ENGINE_AGENT_MODEL_DIR", str(tmp_path / "models"))
    monkeypatch.delenv("LOG_FILE", raising=False)
    monkeypatch.setenv("ENGINE_AGENT_LOG_LEVEL", "CRITICAL")
    yield
    shutdown_logging()


def _json_out(capsys):
    return json.loads(capsys.readouterr().out)


def test_version(capsys):
    assert cli.main(["version"]) == 0
    assert "0.1.0" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 1


def test_start_then_list_then_stop(capsys, runtime):
    code = cli.main(["start", "img:latest", "c1", "--port", "8000/tcp=8000", "--memory", "1024",
                     "--", "--model", "/models/m.bin"])
    assert code == 0
    assert _json_out(capsys)["state"] == "running"
    assert runtime.containers["c1"]["kwargs"]["command"] == ["--model", "/models/m.bin"]
    assert runtime.containers["c1"]["kwargs"]["ports"] == {"8000/tcp": "8000"}
    assert runtime.containers["c1"]["kwargs"]["limits"].memory_bytes == 1024

    assert cli.main(["list"]) == 0
    assert [e["name"] for e in _json_out(capsys)] == ["c1"]

    assert cli.main(["stop", "c1", "--grace", "1"]) == 0
    assert capsys.readouterr().out.strip() == "stopped"

    assert cli.main(["stop", "c1"]) == 0
    assert capsys.readouterr().out.strip() == "already-stopped"


def test_runtime_error_exits_nonzero(capsys, runtime):
    runtime.add_container("c1", "other:1.0")

    assert cli.main(["start", "img:latest", "c1"]) == 1
    assert "error:" in capsys.readouterr().err


def test_models_list_empty(capsys):
    assert cli.main(["models", "list"]) == 0
    assert _json_out(capsys) == []


def test_models_delete_missing(capsys):
    assert cli.main(["models", "delete", "ghost.bin"]) == 1


def test_start_options_without_engine_command(capsys, runtime):
    code = cli.main(["start", "img:latest", "c1", "--cpu-quota", "50000", "--gpus", "-1", "--port", "9000"])

    assert code == 0
    kwargs = runtime.containers["c1"]["kwargs"]
    assert kwargs["command"] == []
    assert kwargs["ports"] == {"9000/tcp": "9000"}
    assert kwargs["limits"].cpu_quota == 50000
    assert kwargs["limits"].gpu.count == -1


def test_engine_args_rejected_for_other_commands(capsys):
    with pytest.raises(SystemExit):
        cli.main(["list", "--", "--model", "x"])
