from __future__ import annotations

import logging
import os
import posixpath
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol, TypeVar

from affiliate_exchange.domain import RemoteEntry
from affiliate_exchange.errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FileDrop(Protocol):
    """Remote file-drop endpoint. Paths are POSIX-style remote paths."""

    def list_files(self, directory: str) -> list[RemoteEntry]:
        ...

    def fetch(self, remote_path: str) -> bytes:
        ...

    def move(self, remote_path: str, dest_path: str) -> str:
        ...

    def ensure_directory(self, path: str) -> None:
        ...


def join_remote(directory: str, name: str) -> str:
    return posixpath.join(directory, name)


class LocalDirectoryFileDrop:
    """
    Drop endpoint backed by a mounted directory (network share or SFTP chroot).

    Remote paths are resolved under `root`; paths escaping the root are refused.
    A move onto an existing name keeps both files by suffixing the newcomer.
    """

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def _resolve(self, remote_path: str) -> Path:
        candidate = (self.root / remote_path.lstrip("/")).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise TransportError(f"Remote path escapes drop root: {remote_path}")
        return candidate

    def list_files(self, directory: str) -> list[RemoteEntry]:
        path = self._resolve(directory)
        entries: list[RemoteEntry] = []
        try:
            with os.scandir(path) as it:
                for entry in it:
                    stat = entry.stat()
                    entries.append(
                        RemoteEntry(
                            name=entry.name,
                            size_bytes=stat.st_size,
                            modified_at_utc=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).replace(tzinfo=None),
                            is_file=entry.is_file(),
                        )
                    )
        except OSError as e:
            raise TransportError(f"Failed to list {directory}: {e}") from e
        return entries

    def fetch(self, remote_path: str) -> bytes:
        try:
            return self._resolve(remote_path).read_bytes()
        except OSError as e:
            raise TransportError(f"Failed to fetch {remote_path}: {e}") from e

    def ensure_directory(self, path: str) -> None:
        try:
            self._resolve(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TransportError(f"Failed to create directory {path}: {e}") from e

    def move(self, remote_path: str, dest_path: str) -> str:
        source = self._resolve(remote_path)
        destination = self._resolve(dest_path)

        if destination.exists():
            unique_name = f"{destination.stem}_{uuid.uuid4().hex[:8]}{destination.suffix}"
            logger.warning("%s already exists; relocating as %s", dest_path, unique_name)
            destination = destination.with_name(unique_name)
            dest_path = posixpath.join(posixpath.dirname(dest_path), unique_name)

        try:
            os.replace(source, destination)
        except OSError as e:
            raise TransportError(f"Failed to move {remote_path} to {dest_path}: {e}") from e
        return dest_path


class TimeoutFileDrop:
    """
    Bounds every call on an inner FileDrop with a hard timeout.

    A call that times out raises TransportError. Its worker thread cannot be
    killed, so the executor holding it is shut down and replaced; a hung call
    never occupies a worker the next call needs.
    """

    def __init__(self, inner: FileDrop, *, timeout_seconds: float, max_workers: int = 2):
        self.inner = inner
        self.timeout_seconds = timeout_seconds
        self.max_workers = max_workers
        self._executor = self._new_executor()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="file-drop")

    def __enter__(self) -> "TimeoutFileDrop":
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        self.close()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _call(self, operation: str, fn: Callable[..., T], *args: str) -> T:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_seconds)
        except TimeoutError as e:
            future.cancel()
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = self._new_executor()
            logger.warning("File drop %s timed out, worker pool replaced", operation)
            raise TransportError(f"{operation} {args[0]} timed out after {self.timeout_seconds}s") from e

    def list_files(self, directory: str) -> list[RemoteEntry]:
        return self._call("list", self.inner.list_files, directory)

    def fetch(self, remote_path: str) -> bytes:
        return self._call("fetch", self.inner.fetch, remote_path)

    def move(self, remote_path: str, dest_path: str) -> str:
        return self._call("move", self.inner.move, remote_path, dest_path)

    def ensure_directory(self, path: str) -> None:
        return self._call("mkdir", self.inner.ensure_directory, path)
