"""
Main entry point for the Engine Agent process.

Stages the configured model, starts the engine container, samples host
resources in the background and stops the engine on SIGINT/SIGTERM.
"""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

from engine_agent.config import AgentConfig
from engine_agent.core.deadline import Deadline
from engine_agent.core.engine_manager import EngineManager
from engine_agent.core.errors import EngineAgentError, RuntimeUnavailableError
from engine_agent.core.models import ResourceSample
from engine_agent.core.runtime import DockerRuntime, RuntimeAdapter
from engine_agent.monitoring.resource_monitor import MonitorTask, ResourceMonitor, Sink, log_sink
from engine_agent.storage.artifact_store import ArtifactStore
from engine_agent.storage.event_store import PostgresEventStore
from engine_agent.utils.logger import configure_logging, get_logger, shutdown_logging


def build_manager(
    config: AgentConfig,
    runtime: Optional[RuntimeAdapter] = None,
    store: Optional[PostgresEventStore] = None,
) -> EngineManager:
    """EngineManager wired from ``config``; connects to Docker unless ``runtime`` is given."""
    if runtime is None:
        runtime = DockerRuntime(timeout=config.docker_timeout, logger=get_logger("runtime"))
    return EngineManager(
        runtime,
        store=store,
        logger=get_logger("engine"),
        pull_attempts=config.pull_attempts,
        pull_backoff=config.pull_backoff,
        pull_policy=config.pull_policy,
        existing_policy=config.existing_policy,
        stop_grace=config.stop_grace,
        stop_margin=config.stop_margin,
        operation_timeout=config.operation_timeout,
        default_mounts=(config.model_bind_mount(),),
    )


def sample_sink(store: Optional[PostgresEventStore]) -> Sink:
    """Log every sample, and persist it when the event store is enabled."""
    logger = get_logger("monitor")
    emit = log_sink(logger)

    def _sink(sample: ResourceSample) -> None:
        emit(sample)
        if store is not None and store.enabled:
            store.record_sample(sample)

    return _sink


@contextmanager
def _signals_set(shutdown: threading.Event, install: bool) -> Iterator[None]:
    if not install:
        yield
        return
    logger = get_logger()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown.set()

    previous = {sig: signal.signal(sig, signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _cancel_on(shutdown: threading.Event, deadline: Deadline) -> threading.Thread:
    """Cancel ``deadline`` as soon as ``shutdown`` is set."""

    def _watch() -> None:
        shutdown.wait()
        deadline.cancel()

    watcher = threading.Thread(target=_watch, name="shutdown-watcher", daemon=True)
    watcher.start()
    return watcher


def run(
    config: Optional[AgentConfig] = None,
    *,
    runtime: Optional[RuntimeAdapter] = None,
    shutdown: Optional[threading.Event] = None,
    install_signals: bool = True,
) -> int:
    """
    Run the agent until ``shutdown`` is set (by default: SIGINT or SIGTERM).

    Returns:
        Process exit code, 0 on graceful shutdown.
    """
    config = config or AgentConfig.from_env()
    shutdown = shutdown or threading.Event()
    logger = configure_logging(config.log_level, config.log_file, config.log_format)
    logger.info("Starting Engine Agent")

    try:
        store = PostgresEventStore(config.postgres_url, logger=get_logger("store"))
        try:
            manager = build_manager(config, runtime=runtime, store=store)
        except RuntimeUnavailableError as e:
            logger.error(f"Failed to initialize engine manager: {e}")
            return 1

        artifacts = ArtifactStore(config.model_dir, logger=get_logger("artifacts"))
        monitor = ResourceMonitor(disk_path=config.monitor_disk_path, logger=get_logger("monitor"))
        monitor_task = MonitorTask(monitor, interval=config.monitor_interval, sink=sample_sink(store)).start()

        started: List[str] = []
        with _signals_set(shutdown, install_signals):
            try:
                if config.model_url and config.model_name:
                    try:
                        artifacts.transfer(config.model_url, config.model_name)
                        logger.info(f"Model downloaded successfully: {config.model_name}")
                    except EngineAgentError as e:
                        logger.error(f"Failed to download model: {e}")

                if config.engine_image:
                    start_deadline = Deadline(config.operation_timeout)
                    _cancel_on(shutdown, start_deadline)
                    try:
                        handle = manager.start_engine(config.engine_spec(), deadline=start_deadline)
                        started.append(handle.name)
                        logger.info(f"Engine started successfully with container name: {handle.name}")
                    except EngineAgentError as e:
                        logger.error(f"Failed to start engine: {e}")
                else:
                    logger.warning("No engine image configured; only monitoring")

                logger.info("Engine Agent is running. Press Ctrl+C to stop.")
                shutdown.wait()
                logger.info("Shutdown signal received")

                for name in started:
                    deadline = Deadline(config.stop_grace + config.stop_margin)
                    try:
                        outcome = manager.stop_engine(name, grace=config.stop_grace, deadline=deadline)
                        logger.info(f"Engine {name}: {outcome.value}")
                    except EngineAgentError as e:
                        logger.error(f"Failed to stop engine: {e}")
            finally:
                monitor_task.stop()
                if not monitor_task.join(timeout=config.stop_margin):
                    logger.warning("Resource monitor did not exit in time")
                artifacts.close()

        logger.info("Engine Agent stopped")
        return 0
    finally:
        shutdown_logging()


if __name__ == "__main__":
    raise SystemExit(run())
