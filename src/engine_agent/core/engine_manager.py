from __future__ import annotations

import logging
import socket
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence

from engine_agent.core.deadline import Deadline
from engine_agent.core.errors import (
    ContainerCreateError,
    ContainerStopError,
    DeadlineExceeded,
    ImagePullError,
    NotFoundError,
    RuntimeStepError,
)
from engine_agent.core.models import (
    BindMount,
    ContainerInfo,
    EngineHandle,
    EngineSpec,
    EngineState,
    EngineSummary,
    StopOutcome,
)
from engine_agent.core.runtime import RuntimeAdapter
from engine_agent.utils.logger import get_logger

MANAGED_LABEL = "managed-by"
MANAGED_VALUE = "engine-agent"
FINGERPRINT_LABEL = "engine-agent.fingerprint"


class ExistingPolicy(str, Enum):
    """What ``start_engine`` does with a container that already holds the name."""

    REUSE = "reuse"
    RECREATE = "recreate"


class PullPolicy(str, Enum):
    ALWAYS = "always"
    MISSING = "missing"


class EngineManager:
    """Drives engine containers through pull, create, start and stop.

    The runtime is the source of truth. ``_handles`` only caches what this
    process started or observed, and every mutating call re-reads the runtime
    before acting.
    """

    def __init__(
        self,
        runtime: RuntimeAdapter,
        *,
        store: Any = None,
        logger: Optional[logging.Logger] = None,
        pull_attempts: int = 3,
        pull_backoff: float = 2.0,
        pull_policy: PullPolicy = PullPolicy.ALWAYS,
        existing_policy: ExistingPolicy = ExistingPolicy.REUSE,
        stop_grace: float = 10.0,
        stop_margin: float = 5.0,
        operation_timeout: Optional[float] = 300.0,
        cleanup_timeout: float = 30.0,
        default_mounts: Sequence[BindMount] = (),
    ) -> None:
        if pull_attempts < 1:
            raise ValueError("pull_attempts must be at least 1")
        self.runtime = runtime
        self.logger = logger or get_logger("engine")
        self.pull_attempts = pull_attempts
        self.pull_backoff = pull_backoff
        self.pull_policy = PullPolicy(pull_policy)
        self.existing_policy = ExistingPolicy(existing_policy)
        self.stop_grace = stop_grace
        self.stop_margin = stop_margin
        self.operation_timeout = operation_timeout
        self.cleanup_timeout = cleanup_timeout
        self.default_mounts = tuple(default_mounts)

        self._store = store
        self._handles: Dict[str, EngineHandle] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ---------- helpers ----------

    def _name_lock(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    @contextmanager
    def _serialized(self, name: str) -> Iterator[None]:
        """One mutating operation per container name at a time."""
        lock = self._name_lock(name)
        with lock:
            yield

    def _record_event(self, event: str, handle: EngineHandle, detail: Optional[str] = None) -> None:
        if self._store is None or not getattr(self._store, "enabled", False):
            return
        try:
            self._store.record_event({
                "name": handle.name,
                "container_id": handle.container_id,
                "image": handle.image,
                "host": socket.gethostname(),
                "state": handle.state.value,
                "event": event,
                "detail": detail,
            })
        except Exception as e:
            self.logger.warning(f"Failed to record {event} event for {handle.name}: {e}")

    @staticmethod
    def _labels(spec: EngineSpec) -> Dict[str, str]:
        return {MANAGED_LABEL: MANAGED_VALUE, FINGERPRINT_LABEL: spec.fingerprint()}

    @staticmethod
    def _is_managed(info: ContainerInfo) -> bool:
        return info.labels.get(MANAGED_LABEL) == MANAGED_VALUE

    @staticmethod
    def _same_config(info: ContainerInfo, spec: EngineSpec) -> bool:
        fingerprint = info.labels.get(FINGERPRINT_LABEL)
        if fingerprint:
            return fingerprint == spec.fingerprint()
        # not created by us; the image is all we can compare
        return info.image == spec.image

    def _deadline(self, seconds: Optional[float]) -> Deadline:
        return Deadline(seconds)

    def _pull(self, image: str, deadline: Deadline) -> None:
        try:
            if self.pull_policy is PullPolicy.MISSING and self.runtime.has_image(image, deadline):
                self.logger.debug(f"Image {image} already exists locally")
                return
            for attempt in range(1, self.pull_attempts + 1):
                try:
                    self.runtime.pull_image(image, deadline)
                    return
                except ImagePullError as e:
                    if not e.retryable or attempt == self.pull_attempts:
                        raise
                    delay = self.pull_backoff * 2 ** (attempt - 1)
                    self.logger.warning(
                        f"Pull attempt {attempt}/{self.pull_attempts} for {image} failed: {e}; retrying in {delay:.1f}s"
                    )
                    deadline.sleep(delay)
        except DeadlineExceeded as e:
            raise ImagePullError(f"Pulling {image} did not finish in time: {e}", image=image, retryable=False) from e

    def _cleanup(self, spec: EngineSpec, container_id: Optional[str], error: RuntimeStepError) -> None:
        """Remove a container left behind by a failed start; failures end up on ``error.cleanup_error``."""
        deadline = self._deadline(self.cleanup_timeout)
        target = container_id
        try:
            if target is None:
                if isinstance(error, ContainerCreateError) and error.conflict:
                    return  # the name belongs to someone else's container
                leftover = self.runtime.inspect_container(spec.name, deadline)
                if leftover is None or leftover.labels.get(FINGERPRINT_LABEL) != spec.fingerprint():
                    return
                target = leftover.id
            self.runtime.remove_container(target, force=True, deadline=deadline)
            self.logger.info(f"Cleaned up failed container {spec.name} ({target})")
        except NotFoundError:
            pass
        except RuntimeStepError as cleanup_error:
            error.cleanup_error = cleanup_error
            self.logger.error(f"Cleanup of failed container {spec.name} ({target}) also failed: {cleanup_error}")

    def _refresh_cache(self, infos: Sequence[ContainerInfo]) -> None:
        """Bring cached handles in line with what the runtime reports."""
        by_name = {i.name: i for i in infos}
        for name in list(self._handles):
            lock = self._name_lock(name)
            if not lock.acquire(blocking=False):
                continue  # an operation on this name is in flight
            try:
                info = by_name.get(name)
                if info is None:
                    self._handles.pop(name, None)
                else:
                    self._handles[name] = EngineHandle.observed(info)
            finally:
                lock.release()

    # -------- public API --------

    def get_handle(self, name: str) -> Optional[EngineHandle]:
        return self._handles.get(name)

    def start_engine(self, spec: EngineSpec, deadline: Optional[Deadline] = None) -> EngineHandle:
        """
        Pull, create and start the container described by ``spec``.

        Returns the existing handle when a container with the same name and
        configuration is already running.

        Raises:
            ImagePullError: the image could not be pulled.
            ContainerCreateError: create failed, or the name is taken by a
                differently configured container under the ``reuse`` policy.
            ContainerStartError: the container did not start.
        """
        deadline = deadline or self._deadline(self.operation_timeout)
        spec = spec.with_mounts(self.default_mounts)

        with self._serialized(spec.name):
            existing = self.runtime.inspect_container(spec.name, deadline)
            reuse_id: Optional[str] = None

            if existing is not None:
                same = self._same_config(existing, spec)
                if existing.running and same:
                    handle = EngineHandle.observed(existing)
                    self._handles[spec.name] = handle
                    self.logger.info(f"Engine {spec.name} already running ({existing.id}), reusing it")
                    return handle
                if not same and self.existing_policy is ExistingPolicy.REUSE:
                    self._handles[spec.name] = EngineHandle.observed(existing)
                    raise ContainerCreateError(
                        f"Container {spec.name} exists with a different configuration "
                        f"(image {existing.image or 'unknown'})",
                        name=spec.name,
                        conflict=True,
                    )
                if self.existing_policy is ExistingPolicy.REUSE:
                    reuse_id = existing.id
                    self.logger.info(f"Engine {spec.name} exists in state {existing.state}, restarting it")
                else:
                    self.logger.info(f"Engine {spec.name} exists in state {existing.state}, recreating it")
                    try:
                        self.runtime.remove_container(existing.id, force=True, deadline=deadline)
                    except NotFoundError:
                        pass
                    except RuntimeStepError as e:
                        raise ContainerCreateError(
                            f"Cannot replace existing container {spec.name}: {e}", name=spec.name
                        ) from e

            handle = EngineHandle(name=spec.name, image=spec.image)
            self._handles[spec.name] = handle
            self.logger.info(f"Starting engine {spec.name} from {spec.image}")

            handle.transition(EngineState.PULLING)
            try:
                self._pull(spec.image, deadline)
            except RuntimeStepError as e:
                handle.transition(EngineState.FAILED, str(e))
                self._record_event("fail", handle, str(e))
                self.logger.error(f"Failed to pull image {spec.image} for {spec.name}: {e}")
                raise
            self._record_event("pull", handle)

            container_id = reuse_id
            try:
                if container_id is None:
                    container_id = self.runtime.create_container(
                        spec.name,
                        spec.image,
                        spec.command,
                        spec.ports,
                        spec.limits,
                        mounts=spec.mounts,
                        environment=spec.environment,
                        labels=self._labels(spec),
                        deadline=deadline,
                    )
                    handle.container_id = container_id
                    handle.transition(EngineState.CREATED)
                    self._record_event("create", handle)
                else:
                    handle.container_id = container_id
                    handle.transition(EngineState.CREATED)

                self.runtime.start_container(container_id, deadline)
                handle.transition(EngineState.RUNNING)
            except RuntimeStepError as e:
                handle.transition(EngineState.FAILED, str(e))
                self.logger.error(f"Failed to start engine {spec.name}: {e}")
                if reuse_id is None:
                    self._cleanup(spec, container_id, e)
                else:
                    # not created by this call, leave it as it was
                    self.logger.info(f"Leaving existing container {spec.name} ({reuse_id}) in place")
                self._record_event("fail", handle, str(e))
                raise

            self._record_event("start", handle)
            self.logger.info(f"Engine started with container ID: {container_id}")
            return handle

    def stop_engine(
        self,
        name: str,
        grace: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> StopOutcome:
        """
        Stop the container called ``name``, force-killing it after ``grace`` seconds.

        A missing or already stopped container is not an error and yields
        ``StopOutcome.ALREADY_STOPPED``.

        Raises:
            ContainerStopError: the runtime failed to stop the container.
        """
        grace = self.stop_grace if grace is None else grace
        deadline = deadline or self._deadline(grace + self.stop_margin)
        self.logger.info(f"Stopping engine: {name} (timeout: {grace}s)")

        with self._serialized(name):
            try:
                info = self.runtime.inspect_container(name, deadline)
            except RuntimeStepError as e:
                raise ContainerStopError(f"Cannot inspect {name} before stopping: {e}", name=name) from e

            if info is None:
                self._handles.pop(name, None)
                self.logger.info(f"Engine {name} not found, nothing to stop")
                return StopOutcome.ALREADY_STOPPED
            if not info.running:
                self._handles[name] = EngineHandle.observed(info)
                self.logger.info(f"Engine {name} is not running (status: {info.state})")
                return StopOutcome.ALREADY_STOPPED

            handle = EngineHandle.observed(info)
            self._handles[name] = handle
            handle.transition(EngineState.STOPPING)
            try:
                self.runtime.stop_container(name, grace, deadline)
            except NotFoundError:
                handle.transition(EngineState.STOPPED)
                self._handles.pop(name, None)
                self.logger.info(f"Engine {name} disappeared while stopping")
                return StopOutcome.ALREADY_STOPPED
            except RuntimeStepError as e:
                handle.transition(EngineState.FAILED, str(e))
                self._record_event("fail", handle, str(e))
                self.logger.error(f"Failed to stop engine {name}: {e}")
                if isinstance(e, ContainerStopError):
                    raise
                raise ContainerStopError(f"Failed to stop container {name}: {e}", name=name) from e

            handle.transition(EngineState.STOPPED)
            self._record_event("stop", handle)
            self.logger.info(f"Engine stopped: {name}")
            return StopOutcome.STOPPED

    def remove_engine(self, name: str, force: bool = True, deadline: Optional[Deadline] = None) -> bool:
        """Delete the container. Returns False when there was nothing to remove."""
        deadline = deadline or self._deadline(self.operation_timeout)
        with self._serialized(name):
            info = self.runtime.inspect_container(name, deadline)
            if info is None:
                self._handles.pop(name, None)
                return False
            try:
                self.runtime.remove_container(info.id, force=force, deadline=deadline)
            except NotFoundError:
                self._handles.pop(name, None)
                return False
            handle = self._handles.pop(name, None) or EngineHandle.observed(info)
            self._record_event("remove", handle)
            self.logger.info(f"Container {name} ({info.id}) removed")
            return True

    def list_engines(self, include_unmanaged: bool = False, deadline: Optional[Deadline] = None) -> List[EngineSummary]:
        """Engines as the runtime reports them right now; only refreshes the handle cache."""
        deadline = deadline or self._deadline(self.operation_timeout)
        infos = self.runtime.list_containers(all=True, deadline=deadline)
        self._refresh_cache(infos)
        out: List[EngineSummary] = []
        for info in infos:
            managed = self._is_managed(info)
            if managed or include_unmanaged or info.name in self._handles:
                out.append(EngineSummary.from_info(info, managed))
        return out
