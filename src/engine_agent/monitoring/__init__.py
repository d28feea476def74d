"""
Monitoring module for Engine Agent.

This module provides host resource sampling (CPU, memory, disk, GPU).
"""

from __future__ import annotations

from engine_agent.monitoring.resource_monitor import (
    MonitorTask,
    NvmlGpuProbe,
    QueueSink,
    ResourceMonitor,
    log_sink,
)

__all__ = ["MonitorTask", "NvmlGpuProbe", "QueueSink", "ResourceMonitor", "log_sink"]
