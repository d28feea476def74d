"""
Core business logic for Engine Agent.

This module contains the engine lifecycle manager and the container runtime adapter.
"""

from __future__ import annotations

from engine_agent.core.deadline import Deadline
from engine_agent.core.engine_manager import EngineManager, ExistingPolicy, PullPolicy
from engine_agent.core.models import (
    BindMount,
    EngineHandle,
    EngineSpec,
    EngineState,
    EngineSummary,
    GpuAllocation,
    ResourceLimits,
    StopOutcome,
)
from engine_agent.core.runtime import DockerRuntime, RuntimeAdapter

__all__ = [
    "BindMount",
    "Deadline",
    "DockerRuntime",
    "EngineHandle",
    "EngineManager",
    "EngineSpec",
    "EngineState",
    "EngineSummary",
    "ExistingPolicy",
    "GpuAllocation",
    "PullPolicy",
    "ResourceLimits",
    "RuntimeAdapter",
    "StopOutcome",
]
