"""
Agent configuration.

Every setting can come from an ``ENGINE_AGENT_*`` environment variable; the
CLI overrides individual fields on top of ``AgentConfig.from_env()``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional

from engine_agent.core.engine_manager import ExistingPolicy, PullPolicy
from engine_agent.core.models import (
    BindMount,
    EngineSpec,
    GpuAllocation,
    ResourceLimits,
    normalize_ports,
)

ENV_PREFIX = "ENGINE_AGENT_"


def parse_ports(raw: str) -> Dict[str, str]:
    """``"8000/tcp=8000,9000=9001"`` -> ``{"8000/tcp": "8000", "9000/tcp": "9001"}``."""
    out: Dict[str, Any] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        cport, sep, host = item.partition("=")
        if not sep:
            cport, host = item, item.split("/")[0]
        out[cport.strip()] = host.strip()
    return normalize_ports(out)


def _to_bool(value: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


@dataclass(frozen=True)
class AgentConfig:
    model_dir: str = "/var/engine-agent/models"
    model_mount: str = "/models"
    model_mount_read_only: bool = False
    model_url: Optional[str] = None
    model_name: Optional[str] = None

    engine_image: Optional[str] = None
    engine_name: str = "engine_agent_container"
    engine_ports: Mapping[str, str] = field(default_factory=lambda: {"8000/tcp": "8000"})
    cpu_quota: int = 0
    memory_bytes: int = 0
    gpu_count: int = 0

    monitor_interval: float = 30.0
    monitor_disk_path: str = "/"

    stop_grace: float = 10.0
    stop_margin: float = 5.0
    pull_attempts: int = 3
    pull_backoff: float = 2.0
    pull_policy: PullPolicy = PullPolicy.ALWAYS
    existing_policy: ExistingPolicy = ExistingPolicy.REUSE
    operation_timeout: float = 300.0
    docker_timeout: int = 60

    postgres_url: Optional[str] = None

    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"

    def __post_init__(self) -> None:
        for name in ("cpu_quota", "memory_bytes", "stop_grace", "stop_margin", "pull_backoff", "docker_timeout"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.monitor_interval <= 0:
            raise ValueError("monitor_interval must be positive")
        if self.pull_attempts < 1:
            raise ValueError("pull_attempts must be at least 1")
        if self.gpu_count < -1:
            raise ValueError("gpu_count must be -1 (all) or non-negative")
        if self.log_format not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")
        object.__setattr__(self, "pull_policy", PullPolicy(self.pull_policy))
        object.__setattr__(self, "existing_policy", ExistingPolicy(self.existing_policy))
        object.__setattr__(self, "engine_ports", normalize_ports(self.engine_ports))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AgentConfig":
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key not in environ:
                continue
            raw = environ[key]
            try:
                values[f.name] = _coerce(f.name, raw)
            except ValueError as e:
                raise ValueError(f"{key}: {e}") from e
        return cls(**values)

    def override(self, **changes: Any) -> "AgentConfig":
        """Copy with the given fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def model_path(self) -> Optional[str]:
        if not self.model_name:
            return None
        return f"{self.model_mount.rstrip('/')}/{self.model_name}"

    def model_bind_mount(self) -> BindMount:
        return BindMount(self.model_dir, self.model_mount, read_only=self.model_mount_read_only)

    def engine_spec(self) -> EngineSpec:
        if not self.engine_image:
            raise ValueError("no engine image configured (ENGINE_AGENT_ENGINE_IMAGE)")
        command = ("--model", self.model_path) if self.model_path else ()
        gpu = GpuAllocation(count=self.gpu_count) if self.gpu_count else None
        return EngineSpec(
            image=self.engine_image,
            name=self.engine_name,
            command=command,
            ports=self.engine_ports,
            limits=ResourceLimits(cpu_quota=self.cpu_quota, memory_bytes=self.memory_bytes, gpu=gpu),
        )


_INT_FIELDS = {"cpu_quota", "memory_bytes", "gpu_count", "pull_attempts", "docker_timeout"}
_FLOAT_FIELDS = {"monitor_interval", "stop_grace", "stop_margin", "pull_backoff", "operation_timeout"}
_BOOL_FIELDS = {"model_mount_read_only"}
_OPTIONAL_FIELDS = {"model_url", "model_name", "engine_image", "postgres_url", "log_file"}


def _coerce(name: str, raw: str) -> Any:
    if name in _INT_FIELDS:
        return int(raw)
    if name in _FLOAT_FIELDS:
        return float(raw)
    if name in _BOOL_FIELDS:
        return _to_bool(raw)
    if name == "engine_ports":
        return parse_ports(raw)
    if name == "pull_policy":
        return PullPolicy(raw.strip().lower())
    if name == "existing_policy":
        return ExistingPolicy(raw.strip().lower())
    if name in _OPTIONAL_FIELDS:
        return raw or None
    if not raw:
        raise ValueError("must not be empty")
    return raw
