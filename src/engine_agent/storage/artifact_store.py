from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

import httpx

from engine_agent.core.errors import NotFoundError, TransferError
from engine_agent.core.models import Artifact
from engine_agent.utils.logger import get_logger

_PARTIAL_PREFIX = ".partial-"
CHUNK_SIZE = 1024 * 1024


def _file_mode() -> int:
    """Mode a plainly created file would get: 0o666 minus the process umask."""
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def _validate_name(name: str) -> str:
    if not name or name in (".", "..") or "/" in name or "\\" in name or "\0" in name:
        raise ValueError(f"invalid artifact name {name!r}")
    if name.startswith(_PARTIAL_PREFIX):
        raise ValueError(f"artifact names may not start with {_PARTIAL_PREFIX!r}")
    return name


class ArtifactStore:
    """Model files under one directory, fetched by URL."""

    def __init__(
        self,
        root: str,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = 60.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.root = Path(root)
        self.logger = logger or get_logger("artifacts")
        self._client = client
        self._timeout = timeout

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout, follow_redirects=True)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def path_for(self, name: str) -> Path:
        return self.root / _validate_name(name)

    def get(self, name: str) -> Artifact:
        path = self.path_for(name)
        return Artifact(name=name, path=str(path), present=path.is_file())

    def transfer(self, url: str, name: str) -> Artifact:
        """
        Download ``url`` into the store as ``name``.

        The payload is streamed to a hidden temporary file and renamed into
        place only after the download completed.

        Raises:
            TransferError: non-success status, network or I/O failure.
        """
        final_path = self.path_for(name)
        self.logger.info(f"Downloading {url} -> {final_path}")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TransferError(f"Cannot create artifact directory {self.root}: {e}", url=url) from e

        fd, tmp_name = tempfile.mkstemp(prefix=_PARTIAL_PREFIX, dir=self.root)
        size = 0
        try:
            with os.fdopen(fd, "wb") as out:
                with self._http().stream("GET", url) as resp:
                    if not resp.is_success:
                        raise TransferError(
                            f"Failed to download {url}, status code: {resp.status_code}",
                            url=url,
                            status_code=resp.status_code,
                        )
                    for chunk in resp.iter_bytes(CHUNK_SIZE):
                        out.write(chunk)
                        size += len(chunk)
                out.flush()
                os.fsync(out.fileno())
            # mkstemp creates 0o600; the engine may read the model as another user
            os.chmod(tmp_name, _file_mode())
            os.replace(tmp_name, final_path)
        except TransferError:
            self._discard(tmp_name)
            raise
        except httpx.HTTPError as e:
            self._discard(tmp_name)
            raise TransferError(f"Failed to download {url}: {e}", url=url) from e
        except OSError as e:
            self._discard(tmp_name)
            raise TransferError(f"Failed to write {final_path}: {e}", url=url) from e

        self.logger.info(f"Model downloaded: {final_path} ({size} bytes)")
        return Artifact(name=name, path=str(final_path), present=True)

    def _discard(self, tmp_name: str) -> None:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove partial download {tmp_name}: {e}")

    def list(self) -> List[str]:
        """Names of complete artifacts, sorted."""
        if not self.root.is_dir():
            return []
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_file() and not p.name.startswith(_PARTIAL_PREFIX)
        )

    def delete(self, name: str) -> None:
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise NotFoundError(f"Artifact not found: {name}", name=name) from e
        self.logger.info(f"Model deleted: {path}")
