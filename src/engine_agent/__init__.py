"""
Engine Agent - single-host supervisor for containerized inference engines.

This package provides:
- Engine container lifecycle (pull, create, start, stop) on Docker
- Host resource monitoring (CPU, memory, disk, GPU)
- Model artifact staging onto local disk
- Optional PostgreSQL history and a small REST API
"""

from __future__ import annotations

__version__ = "0.1.0"

# Core exports
from engine_agent.core.engine_manager import EngineManager
from engine_agent.core.models import EngineSpec, ResourceLimits
from engine_agent.monitoring.resource_monitor import ResourceMonitor
from engine_agent.storage.artifact_store import ArtifactStore
from engine_agent.utils.logger import get_logger

__all__ = [
    "ArtifactStore",
    "EngineManager",
    "EngineSpec",
    "ResourceLimits",
    "ResourceMonitor",
    "get_logger",
    "__version__",
]
