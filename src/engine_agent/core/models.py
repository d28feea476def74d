from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from engine_agent.core.errors import InvalidTransition

_PORT_KEY = re.compile(r"^(\d{1,5})(?:/(tcp|udp|sctp))?$")
_CONTAINER_NAME = re.compile(r"^/?[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


def normalize_port_key(key: Any) -> str:
    """``"8000"`` -> ``"8000/tcp"``; ``"53/udp"`` stays as is."""
    m = _PORT_KEY.match(str(key).strip().lower())
    if not m or not 0 < int(m.group(1)) <= 65535:
        raise ValueError(f"invalid container port {key!r}, expected 'port/proto'")
    return f"{int(m.group(1))}/{m.group(2) or 'tcp'}"


def normalize_host_port(value: Any) -> str:
    """Host ports are kept as strings; empty or ``0`` lets the runtime pick one."""
    if value is None:
        return ""
    s = str(value).strip()
    if s in ("", "0"):
        return ""
    if not s.isdigit() or not 0 < int(s) <= 65535:
        raise ValueError(f"invalid host port {value!r}")
    return str(int(s))


def normalize_ports(ports: Optional[Mapping[Any, Any]]) -> Dict[str, str]:
    fixed: Dict[str, str] = {}
    for cport, host_port in (ports or {}).items():
        key = normalize_port_key(cport)
        if key in fixed:
            raise ValueError(f"duplicate port binding for {key}")
        fixed[key] = normalize_host_port(host_port)
    return fixed


@dataclass(frozen=True)
class GpuAllocation:
    """GPU request; ``count=-1`` means every device, ``device_ids`` wins over ``count``."""

    count: int = -1
    device_ids: Tuple[str, ...] = ()
    driver: str = "nvidia"

    def __post_init__(self) -> None:
        object.__setattr__(self, "device_ids", tuple(str(d) for d in self.device_ids))
        if self.count < -1:
            raise ValueError("gpu count must be -1 (all) or non-negative")

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "device_ids": list(self.device_ids), "driver": self.driver}


@dataclass(frozen=True)
class ResourceLimits:
    """Zero means no limit is applied, not zero resources."""

    cpu_quota: int = 0
    memory_bytes: int = 0
    gpu: Optional[GpuAllocation] = None

    def __post_init__(self) -> None:
        for attr in ("cpu_quota", "memory_bytes"):
            value = getattr(self, attr)
            if value is None:
                object.__setattr__(self, attr, 0)
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{attr} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{attr} must be non-negative, got {value}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cpu_quota": self.cpu_quota,
            "memory_bytes": self.memory_bytes,
            "gpu": self.gpu.to_dict() if self.gpu else None,
        }


@dataclass(frozen=True)
class BindMount:
    host_path: str
    container_path: str
    read_only: bool = False

    @property
    def mode(self) -> str:
        return "ro" if self.read_only else "rw"

    def to_dict(self) -> Dict[str, Any]:
        return {"host_path": self.host_path, "container_path": self.container_path, "read_only": self.read_only}


@dataclass(frozen=True)
class EngineSpec:
    """Desired engine configuration. Immutable once built."""

    image: str
    name: str
    command: Tuple[str, ...] = ()
    ports: Mapping[str, str] = field(default_factory=dict)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    environment: Mapping[str, str] = field(default_factory=dict)
    mounts: Tuple[BindMount, ...] = ()

    def __post_init__(self) -> None:
        if not self.image or not str(self.image).strip():
            raise ValueError("image reference must be non-empty")
        if not self.name or not _CONTAINER_NAME.match(self.name):
            raise ValueError(f"invalid container name {self.name!r}")
        object.__setattr__(self, "name", self.name.lstrip("/"))
        if isinstance(self.command, str):
            raise ValueError("command must be a sequence of arguments, not a string")
        object.__setattr__(self, "command", tuple(str(a) for a in self.command))
        object.__setattr__(self, "ports", MappingProxyType(normalize_ports(self.ports)))
        env = {str(k): str(v) for k, v in (self.environment or {}).items()}
        object.__setattr__(self, "environment", MappingProxyType(env))
        object.__setattr__(self, "mounts", tuple(self.mounts))

    def with_mounts(self, mounts: Iterable[BindMount]) -> "EngineSpec":
        extra = tuple(m for m in mounts if m not in self.mounts)
        return replace(self, mounts=self.mounts + extra)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image": self.image,
            "name": self.name,
            "command": list(self.command),
            "ports": dict(self.ports),
            "limits": self.limits.to_dict(),
            "environment": dict(self.environment),
            "mounts": [m.to_dict() for m in self.mounts],
        }

    def fingerprint(self) -> str:
        """Stable hash of the container configuration."""
        raw = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class EngineState(str, Enum):
    REQUESTED = "requested"
    PULLING = "pulling"
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (EngineState.STOPPED, EngineState.FAILED)


_NEXT_STATE = {
    EngineState.REQUESTED: EngineState.PULLING,
    EngineState.PULLING: EngineState.CREATED,
    EngineState.CREATED: EngineState.RUNNING,
    EngineState.RUNNING: EngineState.STOPPING,
    EngineState.STOPPING: EngineState.STOPPED,
}

# Docker status -> lifecycle state
_RUNTIME_STATES = {
    "created": EngineState.CREATED,
    "running": EngineState.RUNNING,
    "restarting": EngineState.RUNNING,
    "paused": EngineState.RUNNING,
    "removing": EngineState.STOPPING,
    "exited": EngineState.STOPPED,
    "dead": EngineState.FAILED,
}


def state_from_runtime(status: Optional[str]) -> EngineState:
    return _RUNTIME_STATES.get((status or "").lower(), EngineState.STOPPED)


@dataclass(frozen=True)
class ContainerInfo:
    """What the runtime reports about one container."""

    id: str
    names: Tuple[str, ...]
    state: str
    image: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.names[0] if self.names else ""

    @property
    def running(self) -> bool:
        return state_from_runtime(self.state) is EngineState.RUNNING


@dataclass
class EngineHandle:
    name: str
    state: EngineState = EngineState.REQUESTED
    container_id: Optional[str] = None
    image: str = ""
    error: Optional[str] = None

    @classmethod
    def observed(cls, info: ContainerInfo) -> "EngineHandle":
        """Adopt a container as the runtime reports it."""
        return cls(name=info.name, state=state_from_runtime(info.state), container_id=info.id, image=info.image)

    def transition(self, new_state: EngineState, error: Optional[str] = None) -> None:
        if self.state.terminal:
            raise InvalidTransition(f"{self.name}: {self.state.value} is terminal")
        if new_state is EngineState.FAILED:
            self.error = error
        elif _NEXT_STATE.get(self.state) is not new_state:
            raise InvalidTransition(f"{self.name}: {self.state.value} -> {new_state.value} is not allowed")
        self.state = new_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "container_id": self.container_id,
            "image": self.image,
            "state": self.state.value,
            "error": self.error,
        }


@dataclass(frozen=True)
class EngineSummary:
    name: str
    container_id: str
    image: str
    state: EngineState
    status: str
    managed: bool

    @classmethod
    def from_info(cls, info: ContainerInfo, managed: bool) -> "EngineSummary":
        return cls(
            name=info.name,
            container_id=info.id,
            image=info.image,
            state=state_from_runtime(info.state),
            status=info.state,
            managed=managed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "container_id": self.container_id,
            "image": self.image,
            "state": self.state.value,
            "status": self.status,
            "managed": self.managed,
        }


class StopOutcome(str, Enum):
    STOPPED = "stopped"
    ALREADY_STOPPED = "already-stopped"


@dataclass(frozen=True)
class ResourceSample:
    timestamp: float
    cpu_percent: float
    memory_total: int
    memory_used: int
    memory_percent: float
    disk_total: int
    disk_used: int
    disk_percent: float
    gpu_percent: Tuple[float, ...] = ()
    errors: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "gpu_percent", tuple(self.gpu_percent))
        object.__setattr__(self, "errors", MappingProxyType(dict(self.errors)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "cpu_percent": self.cpu_percent,
            "memory_total": self.memory_total,
            "memory_used": self.memory_used,
            "memory_percent": self.memory_percent,
            "disk_total": self.disk_total,
            "disk_used": self.disk_used,
            "disk_percent": self.disk_percent,
            "gpu_percent": list(self.gpu_percent),
            "errors": dict(self.errors),
        }


@dataclass(frozen=True)
class Artifact:
    name: str
    path: str
    present: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "path": self.path, "present": self.present}
