"""
Storage module for Engine Agent.

Model artifacts on local disk and lifecycle/resource history in PostgreSQL.
"""

from __future__ import annotations

from engine_agent.storage.artifact_store import ArtifactStore
from engine_agent.storage.event_store import PostgresEventStore

__all__ = ["ArtifactStore", "PostgresEventStore"]
