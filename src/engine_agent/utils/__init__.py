"""
Utilities module for Engine Agent.

This module provides common utilities like logging configuration.
"""

from __future__ import annotations

from engine_agent.utils.logger import configure_logging, get_logger, shutdown_logging

__all__ = ["configure_logging", "get_logger", "shutdown_logging"]
