# tests/integration/test_docker_lifecycle.py
"""
Engine lifecycle against a real Docker daemon. Skipped when Docker is unavailable.
"""

import uuid

import docker
import pytest

from engine_agent.core.deadline import Deadline
from engine_agent.core.engine_manager import MANAGED_LABEL, MANAGED_VALUE, EngineManager
from engine_agent.core.errors import ContainerCreateError, ImagePullError
from engine_agent.core.models import EngineSpec, EngineState, ResourceLimits, StopOutcome
from engine_agent.core.runtime import DockerRuntime

pytestmark = [pytest.mark.integration, pytest.mark.requires_docker]

IMAGE = "nginx:alpine"
MEM = 128 * 1024 * 1024
CPU = 25000                     # quarter CPU


def _docker_or_skip():
    """Return a docker client or skip tests if Docker is unavailable."""
    try:
        client = docker.from_env()
        client.ping()
        return client
    except Exception as e:
        pytest.skip(f"Docker not available: {e}")


@pytest.fixture(scope="module")
def dclient():
    return _docker_or_skip()


@pytest.fixture
def name():
    return f"engine-agent-test-{uuid.uuid4().hex[:8]}"


@pytest.fixture(autouse=True)
def cleanup_managed_containers(dclient, name):
    def _prune():
        for c in dclient.containers.list(all=True, filters={"name": name}):
            c.remove(force=True)

    _prune()
    yield
    _prune()


@pytest.fixture
def docker_manager(dclient):
    return EngineManager(DockerRuntime(dclient), pull_backoff=0.5, stop_grace=2.0)


def _spec(name, image=IMAGE):
    return EngineSpec(
        image=image,
        name=name,
        ports={"80/tcp": ""},
        limits=ResourceLimits(cpu_quota=CPU, memory_bytes=MEM),
    )


def test_start_creates_running_container_with_limits(docker_manager, dclient, name):
    handle = docker_manager.start_engine(_spec(name))

    assert handle.state is EngineState.RUNNING
    c = dclient.containers.get(name)
    assert c.status == "running"
    assert c.attrs["HostConfig"]["Memory"] == MEM
    assert c.attrs["HostConfig"]["CpuQuota"] == CPU
    assert c.labels[MANAGED_LABEL] == MANAGED_VALUE


def test_start_twice_keeps_one_container(docker_manager, dclient, name):
    first = docker_manager.start_engine(_spec(name))
    second = docker_manager.start_engine(_spec(name))

    assert first.container_id == second.container_id
    assert len(dclient.containers.list(all=True, filters={"name": name})) == 1


def test_stop_then_stop_again(docker_manager, dclient, name):
    docker_manager.start_engine(_spec(name))

    assert docker_manager.stop_engine(name, deadline=Deadline(30)) is StopOutcome.STOPPED
    assert docker_manager.stop_engine(name) is StopOutcome.ALREADY_STOPPED
    assert dclient.containers.get(name).status == "exited"


def test_stopped_container_is_restarted(docker_manager, dclient, name):
    first = docker_manager.start_engine(_spec(name))
    docker_manager.stop_engine(name)

    again = docker_manager.start_engine(_spec(name))

    assert again.container_id == first.container_id
    assert dclient.containers.get(name).status == "running"


def test_foreign_container_is_not_replaced(docker_manager, dclient, name):
    dclient.containers.create(IMAGE, name=name)

    with pytest.raises(ContainerCreateError) as exc:
        docker_manager.start_engine(_spec(name, image="nginx:stable-alpine"))

    assert exc.value.conflict


def test_unknown_image_fails_without_container(docker_manager, dclient, name):
    with pytest.raises(ImagePullError):
        docker_manager.start_engine(_spec(name, image=f"engine-agent/does-not-exist-{uuid.uuid4().hex}:1"))

    assert dclient.containers.list(all=True, filters={"name": name}) == []


def test_list_shows_managed_engine(docker_manager, name):
    docker_manager.start_engine(_spec(name))

    names = [s.name for s in docker_manager.list_engines()]

    assert name in names
