"""
Unit tests for the REST API with the in-memory runtime.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from engine_agent.api.app import create_app
from engine_agent.core.errors import ContainerStartError
from engine_agent.core.models import ResourceSample
from engine_agent.storage.artifact_store import ArtifactStore


class StaticMonitor:
    def sample_once(self):
        return ResourceSample(
            timestamp=1.0, cpu_percent=12.5, memory_total=100, memory_used=50, memory_percent=50.0,
            disk_total=1000, disk_used=10, disk_percent=1.0,
        )


def _model_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/m.bin":
        return httpx.Response(200, content=b"weights")
    return httpx.Response(500)


@pytest.fixture
def api_client(manager, tmp_path):
    artifacts = ArtifactStore(
        str(tmp_path / "models"),
        client=httpx.Client(transport=httpx.MockTransport(_model_handler)),
    )
    return TestClient(create_app(manager, artifacts, StaticMonitor()))


@pytest.fixture
def start_body():
    return {
        "image": "img:latest",
        "name": "c1",
        "ports": {"8000/tcp": "8000"},
        "cpu_quota": 200000,
        "memory_bytes": 4294967296,
    }


def test_health(api_client):
    response = api_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "OK"


def test_start_list_stop(api_client, start_body):
    response = api_client.post("/engines", json=start_body)
    assert response.status_code == 200, response.text
    assert response.json()["state"] == "running"

    engines = api_client.get("/engines").json()["engines"]
    assert [(e["name"], e["state"]) for e in engines] == [("c1", "running")]

    stop = api_client.post("/engines/c1/stop", json={"grace": 2})
    assert stop.json() == {"name": "c1", "outcome": "stopped"}

    again = api_client.post("/engines/c1/stop")
    assert again.json()["outcome"] == "already-stopped"


def test_start_conflict_is_409(api_client, runtime, start_body):
    runtime.add_container("c1", "other:2.0")

    response = api_client.post("/engines", json=start_body)

    assert response.status_code == 409
    assert response.json()["error"] == "ContainerCreateError"


def test_start_failure_is_502(api_client, runtime, start_body):
    runtime.start_error = ContainerStartError("port is already allocated")

    response = api_client.post("/engines", json=start_body)

    assert response.status_code == 502
    assert "already allocated" in response.json()["detail"]


def test_invalid_spec_is_422(api_client, start_body):
    start_body["ports"] = {"not-a-port": "1"}

    assert api_client.post("/engines", json=start_body).status_code == 422


def test_negative_limits_rejected(api_client, start_body):
    start_body["memory_bytes"] = -1

    assert api_client.post("/engines", json=start_body).status_code == 422


def test_remove_missing_engine_is_404(api_client):
    assert api_client.delete("/engines/ghost").status_code == 404


def test_artifacts(api_client):
    response = api_client.post("/artifacts", json={"url": "http://host/m.bin", "name": "m.bin"})
    assert response.status_code == 200
    assert response.json()["present"] is True

    assert api_client.get("/artifacts").json() == {"artifacts": ["m.bin"]}
    assert api_client.delete("/artifacts/m.bin").status_code == 200
    assert api_client.delete("/artifacts/m.bin").status_code == 404


def test_failed_transfer_is_502(api_client):
    response = api_client.post("/artifacts", json={"url": "http://host/x.bin", "name": "x.bin"})

    assert response.status_code == 502
    assert response.json()["status_code"] == 500


def test_resources(api_client):
    data = api_client.get("/resources").json()

    assert data["cpu_percent"] == 12.5
    assert data["gpu_percent"] == []
