"""Tests for the run lock."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from lxdbackup.locking import LockManager, LockTimeoutError


def test_run_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring the lock writes holder metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "lxd-backup.lock"
    with manager.run_lock() as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.run_lock(timeout=0.2):
        pass


def test_run_lock_timeout(tmp_path: Path) -> None:
    """A second acquisition times out while the first is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.run_lock():
        with pytest.raises(LockTimeoutError) as excinfo:
            with LockManager(tmp_path / "run", default_timeout=0.1).run_lock():
                pass

    assert f"pid {os.getpid()}" in str(excinfo.value)


def test_run_lock_unwritable_directory(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An unusable runtime directory surfaces as ``LockTimeoutError``."""
    runtime = tmp_path / "run"
    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == runtime:
            raise PermissionError("read-only")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    with pytest.raises(LockTimeoutError):
        with LockManager(runtime, default_timeout=0.1).run_lock():
            pass
