from __future__ import annotations

from typing import Optional


class EngineAgentError(Exception):
    """Base class for every error raised by the agent."""


class RuntimeStepError(EngineAgentError):
    """A failed call against the container runtime.

    ``cleanup_error`` is set when removing a partially created container
    failed as well; the primary error is still the one raised.
    """

    def __init__(self, message: str, *, name: Optional[str] = None) -> None:
        super().__init__(message)
        self.name = name
        self.cleanup_error: Optional[BaseException] = None


class ImagePullError(RuntimeStepError):
    def __init__(self, message: str, *, image: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.image = image
        self.retryable = retryable


class ContainerCreateError(RuntimeStepError):
    def __init__(self, message: str, *, name: Optional[str] = None, conflict: bool = False) -> None:
        super().__init__(message, name=name)
        self.conflict = conflict


class ContainerStartError(RuntimeStepError):
    pass


class ContainerStopError(RuntimeStepError):
    pass


class ContainerRemoveError(RuntimeStepError):
    pass


class RuntimeUnavailableError(RuntimeStepError):
    """The Docker daemon could not be reached."""


class DeadlineExceeded(RuntimeStepError):
    pass


class NotFoundError(EngineAgentError):
    def __init__(self, message: str, *, name: Optional[str] = None) -> None:
        super().__init__(message)
        self.name = name


class TransferError(EngineAgentError):
    def __init__(self, message: str, *, url: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class MonitorSampleError(EngineAgentError):
    def __init__(self, message: str, *, errors: Optional[dict] = None) -> None:
        super().__init__(message)
        self.errors = dict(errors or {})


class InvalidTransition(EngineAgentError):
    pass


__all__ = [
    "ContainerCreateError",
    "ContainerRemoveError",
    "ContainerStartError",
    "ContainerStopError",
    "DeadlineExceeded",
    "EngineAgentError",
    "ImagePullError",
    "InvalidTransition",
    "MonitorSampleError",
    "NotFoundError",
    "RuntimeStepError",
    "RuntimeUnavailableError",
    "TransferError",
]
