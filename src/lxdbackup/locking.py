"""Process-level run lock.

Only one backup run may touch the storage target and the LXD daemon at a
time. The lock is an ``flock`` on ``<runtime_dir>/lxd-backup.lock``; the file
carries JSON metadata about the holder for diagnostics and is left in place
after release.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import PreconditionError

GLOBAL_LOCK_NAME = "lxd-backup.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(PreconditionError):
    """Raised when the run lock cannot be acquired in time."""


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire the global run lock under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    @property
    def lock_path(self) -> Path:
        """Path of the global run lock."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    @contextmanager
    def run_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global run lock for the duration of the block."""
        path = self.lock_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockTimeoutError(f"Cannot open lock file {path}: {exc}") from exc

        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.monotonic() - started >= limit:
                        holder = _read_holder(path)
                        raise LockTimeoutError(
                            f"Another lxd-backup run holds {path}{holder}."
                        ) from exc
                    time.sleep(_POLL_INTERVAL)

            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, data, 0)


def _read_holder(path: Path) -> str:
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError):
        return ""
    pid = data.get("pid") if isinstance(data, dict) else None
    return f" (pid {pid})" if pid else ""


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
