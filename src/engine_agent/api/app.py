from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from engine_agent import __version__
from engine_agent.core.engine_manager import EngineManager
from engine_agent.core.errors import (
    ContainerCreateError,
    EngineAgentError,
    NotFoundError,
    TransferError,
)
from engine_agent.core.models import EngineSpec, GpuAllocation, ResourceLimits
from engine_agent.monitoring.resource_monitor import ResourceMonitor
from engine_agent.storage.artifact_store import ArtifactStore
from engine_agent.utils.logger import get_logger

logger = get_logger("api")


# -------- Schemas --------

class StartBody(BaseModel):
    image: str = Field(..., min_length=1, description="Image reference, e.g. 'vllm/vllm-openai:latest'")
    name: str = Field(..., min_length=1, description="Host-unique container name")
    command: List[str] = Field(default_factory=list)
    ports: Dict[str, str] = Field(default_factory=dict, description="{'8000/tcp': '8000'}")
    environment: Dict[str, str] = Field(default_factory=dict)
    cpu_quota: int = Field(default=0, ge=0, description="CFS quota; 100000 = one CPU, 0 = unlimited")
    memory_bytes: int = Field(default=0, ge=0, description="0 = unlimited")
    gpu_count: int = Field(default=0, ge=-1, description="-1 = all GPUs")

    def to_spec(self) -> EngineSpec:
        gpu = GpuAllocation(count=self.gpu_count) if self.gpu_count else None
        return EngineSpec(
            image=self.image,
            name=self.name,
            command=tuple(self.command),
            ports=self.ports,
            environment=self.environment,
            limits=ResourceLimits(cpu_quota=self.cpu_quota, memory_bytes=self.memory_bytes, gpu=gpu),
        )


class StopBody(BaseModel):
    grace: Optional[float] = Field(default=None, ge=0, description="Seconds before the engine is killed")


class TransferBody(BaseModel):
    url: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class HandleView(BaseModel):
    name: str
    container_id: Optional[str] = None
    image: str = ""
    state: str
    error: Optional[str] = None


class StopResponse(BaseModel):
    name: str
    outcome: str


def _error(status: int, exc: Exception, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
    body.update(extra)
    return JSONResponse(status_code=status, content=body)


def create_app(
    manager: EngineManager,
    artifacts: ArtifactStore,
    monitor: Optional[ResourceMonitor] = None,
) -> FastAPI:
    """HTTP surface over one manager, artifact store and resource monitor."""
    app = FastAPI(title="Engine Agent API", version=__version__)
    monitor = monitor or ResourceMonitor()

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, exc)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error(422, exc)

    @app.exception_handler(EngineAgentError)
    async def agent_error_handler(request: Request, exc: EngineAgentError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        if isinstance(exc, ContainerCreateError) and exc.conflict:
            return _error(409, exc)
        cleanup = getattr(exc, "cleanup_error", None)
        return _error(502, exc, cleanup_error=str(cleanup) if cleanup else None)

    @app.get("/health")
    def health():
        """Basic health check - just returns OK if the service is running"""
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    # -------- engines --------

    @app.get("/engines")
    def list_engines(all: bool = Query(default=False, description="Include containers not started by the agent")):
        return {"engines": [s.to_dict() for s in manager.list_engines(include_unmanaged=all)]}

    @app.post("/engines", response_model=HandleView)
    def start_engine(body: StartBody):
        handle = manager.start_engine(body.to_spec())
        return HandleView(**handle.to_dict())

    @app.post("/engines/{name}/stop", response_model=StopResponse)
    def stop_engine(name: str, body: Optional[StopBody] = None):
        grace = body.grace if body else None
        outcome = manager.stop_engine(name, grace=grace)
        return StopResponse(name=name, outcome=outcome.value)

    @app.delete("/engines/{name}")
    def remove_engine(name: str):
        if not manager.remove_engine(name):
            raise NotFoundError(f"Container not found: {name}", name=name)
        return {"ok": True}

    # -------- artifacts --------

    @app.get("/artifacts")
    def list_artifacts():
        return {"artifacts": artifacts.list()}

    @app.post("/artifacts")
    def transfer_artifact(body: TransferBody):
        try:
            artifact = artifacts.transfer(body.url, body.name)
        except TransferError as e:
            return _error(502, e, status_code=e.status_code)
        return artifact.to_dict()

    @app.delete("/artifacts/{name}")
    def delete_artifact(name: str):
        artifacts.delete(name)
        return {"ok": True}

    # -------- resources --------

    @app.get("/resources")
    def resources():
        return monitor.sample_once().to_dict()

    return app
