from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.types import DeviceRequest

from engine_agent.core.deadline import Deadline
from engine_agent.core.errors import (
    ContainerCreateError,
    ContainerRemoveError,
    ContainerStartError,
    ContainerStopError,
    ImagePullError,
    NotFoundError,
    RuntimeUnavailableError,
)
from engine_agent.core.models import BindMount, ContainerInfo, ResourceLimits
from engine_agent.utils.logger import get_logger

RESTART_POLICY = {"Name": "unless-stopped"}

# registry answers that will not change on retry
_PERMANENT_PULL_STATUS = (401, 403, 404)


class RuntimeAdapter(Protocol):
    """Thin, blocking calls against the container engine. No retries here."""

    def pull_image(self, ref: str, deadline: Optional[Deadline] = None) -> None: ...

    def has_image(self, ref: str, deadline: Optional[Deadline] = None) -> bool: ...

    def create_container(
        self,
        name: str,
        image: str,
        command: Sequence[str],
        ports: Mapping[str, str],
        limits: ResourceLimits,
        mounts: Sequence[BindMount] = (),
        environment: Optional[Mapping[str, str]] = None,
        labels: Optional[Mapping[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> str: ...

    def start_container(self, container_id: str, deadline: Optional[Deadline] = None) -> None: ...

    def stop_container(self, name: str, grace: float, deadline: Optional[Deadline] = None) -> None: ...

    def remove_container(self, name_or_id: str, force: bool = True, deadline: Optional[Deadline] = None) -> None: ...

    def inspect_container(self, name: str, deadline: Optional[Deadline] = None) -> Optional[ContainerInfo]: ...

    def list_containers(
        self,
        all: bool = True,
        labels: Optional[Mapping[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[ContainerInfo]: ...


def _check(deadline: Optional[Deadline], operation: str) -> None:
    if deadline is not None:
        deadline.check(operation)


def _port_bindings(ports: Mapping[str, str]) -> Dict[str, Optional[int]]:
    """``{"8000/tcp": "8000"}`` -> ``{"8000/tcp": 8000}``; an empty host port lets Docker pick one."""
    return {cport: (int(host) if host else None) for cport, host in ports.items()}


def _device_requests(limits: ResourceLimits) -> List[DeviceRequest]:
    gpu = limits.gpu
    if gpu is None:
        return []
    if gpu.device_ids:
        return [DeviceRequest(driver=gpu.driver, device_ids=list(gpu.device_ids), capabilities=[["gpu"]])]
    if gpu.count == 0:
        return []
    return [DeviceRequest(driver=gpu.driver, count=gpu.count, capabilities=[["gpu"]])]


def build_create_kwargs(
    name: str,
    command: Sequence[str],
    ports: Mapping[str, str],
    limits: ResourceLimits,
    mounts: Sequence[BindMount] = (),
    environment: Optional[Mapping[str, str]] = None,
    labels: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Translate engine settings into ``containers.create`` keyword arguments."""
    kwargs: Dict[str, Any] = {
        "name": name,
        "restart_policy": dict(RESTART_POLICY),
    }
    if command:
        kwargs["command"] = list(command)
    if ports:
        kwargs["ports"] = _port_bindings(ports)
    if limits.cpu_quota > 0:
        kwargs["cpu_quota"] = limits.cpu_quota
    if limits.memory_bytes > 0:
        kwargs["mem_limit"] = limits.memory_bytes
    device_requests = _device_requests(limits)
    if device_requests:
        kwargs["device_requests"] = device_requests
    if mounts:
        kwargs["volumes"] = {m.host_path: {"bind": m.container_path, "mode": m.mode} for m in mounts}
    if environment:
        kwargs["environment"] = dict(environment)
    if labels:
        kwargs["labels"] = dict(labels)
    return kwargs


def _to_info(c: Container) -> ContainerInfo:
    attrs = c.attrs or {}
    image = (attrs.get("Config") or {}).get("Image") or ""
    return ContainerInfo(
        id=c.id,
        names=(c.name,),
        state=c.status,
        image=image,
        labels=dict(c.labels or {}),
    )


class DockerRuntime:
    """Runtime adapter backed by the Docker SDK."""

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        *,
        timeout: int = 60,
        connect_retries: int = 3,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or get_logger("runtime")
        self.timeout = timeout
        self.client = client
        if self.client is None:
            self._init_docker_client(connect_retries)

    def _init_docker_client(self, max_retries: int = 3) -> None:
        """Initialize Docker client with retry logic"""
        for attempt in range(max_retries):
            try:
                self.client = docker.from_env(timeout=self.timeout)
                self.client.ping()
                self.logger.info("Docker client initialized successfully")
                return
            except (DockerException, requests.exceptions.RequestException) as e:
                self.logger.warning(f"Docker client initialization attempt {attempt + 1}/{max_retries} failed: {e}")
                if attempt < max_retries - 1:
                    time.sleep(2 ** attempt)
                else:
                    self.logger.error(f"Failed to initialize Docker client after {max_retries} attempts: {e}")
                    raise RuntimeUnavailableError(f"Cannot connect to Docker daemon: {e}") from e

    # ---------- images ----------

    def pull_image(self, ref: str, deadline: Optional[Deadline] = None) -> None:
        _check(deadline, f"pull {ref}")
        self.logger.info(f"Pulling image {ref}...")
        try:
            self.client.images.pull(ref)
        except ImageNotFound as e:
            raise ImagePullError(f"Image {ref} not found: {e}", image=ref, retryable=False) from e
        except APIError as e:
            permanent = e.status_code in _PERMANENT_PULL_STATUS
            raise ImagePullError(f"Failed to pull image {ref}: {e}", image=ref, retryable=not permanent) from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ImagePullError(f"Failed to pull image {ref}: {e}", image=ref, retryable=True) from e
        self.logger.info(f"Successfully pulled image {ref}")

    def has_image(self, ref: str, deadline: Optional[Deadline] = None) -> bool:
        _check(deadline, f"inspect image {ref}")
        try:
            self.client.images.get(ref)
            return True
        except ImageNotFound:
            return False
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeUnavailableError(f"Cannot inspect image {ref}: {e}") from e

    # ---------- containers ----------

    def create_container(
        self,
        name: str,
        image: str,
        command: Sequence[str],
        ports: Mapping[str, str],
        limits: ResourceLimits,
        mounts: Sequence[BindMount] = (),
        environment: Optional[Mapping[str, str]] = None,
        labels: Optional[Mapping[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> str:
        _check(deadline, f"create {name}")
        kwargs = build_create_kwargs(name, command, ports, limits, mounts, environment, labels)
        self.logger.debug(f"Create kwargs for {name}: {kwargs}")
        try:
            container = self.client.containers.create(image, **kwargs)
        except ImageNotFound as e:
            raise ContainerCreateError(f"Image {image} is not available locally: {e}", name=name) from e
        except APIError as e:
            conflict = e.status_code == 409
            raise ContainerCreateError(f"Failed to create container {name}: {e}", name=name, conflict=conflict) from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ContainerCreateError(f"Failed to create container {name}: {e}", name=name) from e
        self.logger.info(f"Container created: {container.id} ({name})")
        return container.id

    def start_container(self, container_id: str, deadline: Optional[Deadline] = None) -> None:
        _check(deadline, f"start {container_id}")
        try:
            self.client.containers.get(container_id).start()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ContainerStartError(f"Failed to start container {container_id}: {e}") from e

    def stop_container(self, name: str, grace: float, deadline: Optional[Deadline] = None) -> None:
        _check(deadline, f"stop {name}")
        remaining = deadline.remaining() if deadline is not None else None
        if remaining is not None:
            grace = min(grace, remaining)
        try:
            c = self._get_by_name(name)
            c.stop(timeout=int(max(0, round(grace))))
        except NotFound as e:
            raise NotFoundError(f"Container not found: {name}", name=name) from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ContainerStopError(f"Failed to stop container {name}: {e}", name=name) from e

    def remove_container(self, name_or_id: str, force: bool = True, deadline: Optional[Deadline] = None) -> None:
        _check(deadline, f"remove {name_or_id}")
        try:
            self.client.containers.get(name_or_id).remove(force=force)
        except NotFound as e:
            raise NotFoundError(f"Container not found: {name_or_id}", name=name_or_id) from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ContainerRemoveError(f"Failed to remove container {name_or_id}: {e}", name=name_or_id) from e

    def inspect_container(self, name: str, deadline: Optional[Deadline] = None) -> Optional[ContainerInfo]:
        _check(deadline, f"inspect {name}")
        try:
            return _to_info(self._get_by_name(name))
        except NotFound:
            return None
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeUnavailableError(f"Cannot inspect container {name}: {e}") from e

    def list_containers(
        self,
        all: bool = True,
        labels: Optional[Mapping[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[ContainerInfo]:
        _check(deadline, "list containers")
        filters = {"label": [f"{k}={v}" for k, v in labels.items()]} if labels else None
        try:
            items = self.client.containers.list(all=all, filters=filters, ignore_removed=True)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeUnavailableError(f"Cannot list containers: {e}") from e
        return [_to_info(c) for c in items]

    def _get_by_name(self, name: str) -> Container:
        """Exact-name lookup; ``containers.get`` also matches id prefixes."""
        c = self.client.containers.get(name)
        if c.name != name.lstrip("/") and c.id != name:
            raise NotFound(f"No container named {name}")
        return c
