"""
API module for Engine Agent.

This module provides the FastAPI-based REST API over the engine manager.
"""

from __future__ import annotations

__all__ = ["run_server"]


def run_server(host: str = "0.0.0.0", port: int = 8080) -> None:
    """Run the API server against the local Docker daemon."""
    import uvicorn

    from engine_agent.api.app import create_app
    from engine_agent.config import AgentConfig
    from engine_agent.main import build_manager
    from engine_agent.storage.artifact_store import ArtifactStore
    from engine_agent.storage.event_store import PostgresEventStore
    from engine_agent.utils.logger import configure_logging

    config = AgentConfig.from_env()
    configure_logging(config.log_level, config.log_file, config.log_format)
    store = PostgresEventStore(config.postgres_url)
    app = create_app(build_manager(config, store=store), ArtifactStore(config.model_dir))
    uvicorn.run(app, host=host, port=port)
