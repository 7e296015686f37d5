"""Shared fixtures for the lxd-backup test suite."""

from __future__ import annotations

import os
import subprocess
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import pytest

from lxdbackup.config import AppConfig, load_config
from lxdbackup.providers.lxd import Instance, LxdError, LxdTimeoutError


class FakeLxd:
    """In-memory stand-in for :class:`lxdbackup.providers.lxd.LxdProvider`."""

    def __init__(self, instances: list[Instance] | None = None) -> None:
        """Start with *instances* and no remote artifacts."""
        self.instances = list(instances or [])
        self.snapshots: dict[str, list[str]] = defaultdict(list)
        self.images: dict[str, list[str]] = defaultdict(list)
        self.calls: list[tuple[str, str]] = []
        self.timeouts: dict[str, float | None] = {}
        self.export_suffix = ".tar.gz"
        self.export_payload = b"image-bytes"
        self.partial_on_export_failure = False
        self._failures: dict[tuple[str, str | None], type[LxdError]] = {}

    def fail(self, operation: str, instance: str | None = None, *, timeout: bool = False) -> None:
        """Make *operation* fail (optionally only for *instance*)."""
        self._failures[(operation, instance)] = LxdTimeoutError if timeout else LxdError

    def _check(self, operation: str, subject: str, timeout: float | None) -> None:
        self.calls.append((operation, subject))
        self.timeouts[operation] = timeout
        error = self._failures.get((operation, subject)) or self._failures.get((operation, None))
        if error is not None:
            raise error(f"simulated {operation} failure for {subject}")

    @staticmethod
    def _ok() -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(["lxc"], returncode=0, stdout="", stderr="")

    # Inventory -----------------------------------------------------
    def list_instances(self, *, timeout: float | None = None) -> list[Instance]:
        self._check("list", "*", timeout)
        return list(self.instances)

    def list_snapshots(self, instance: Instance, *, timeout: float | None = None) -> list[str]:
        self._check("list_snapshots", instance.name, timeout)
        return list(self.snapshots[instance.name])

    def list_image_aliases(self, project: str, *, timeout: float | None = None) -> list[str]:
        self._check("list_images", project, timeout)
        return list(self.images[project])

    # Pipeline ------------------------------------------------------
    def create_snapshot(
        self, instance: Instance, snapshot: str, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:
        self._check("snapshot", instance.name, timeout)
        self.snapshots[instance.name].append(snapshot)
        return self._ok()

    def publish_image(
        self,
        instance: Instance,
        snapshot: str,
        alias: str,
        *,
        compression: str = "gzip",
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        self._check("publish", instance.name, timeout)
        self.images[instance.project].append(alias)
        return self._ok()

    def export_image(
        self, alias: str, project: str, target: Path, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:
        try:
            self._check("export", _instance_from_alias(alias), timeout)
        except LxdError:
            if self.partial_on_export_failure:
                Path(f"{target}{self.export_suffix}").write_bytes(b"trunc")
            raise
        Path(f"{target}{self.export_suffix}").write_bytes(self.export_payload)
        return self._ok()

    def delete_image(
        self, alias: str, project: str, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:
        self._check("delete_image", alias, timeout)
        if alias in self.images[project]:
            self.images[project].remove(alias)
        return self._ok()

    def delete_snapshot(
        self, instance: Instance, snapshot: str, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:
        self._check("delete_snapshot", instance.name, timeout)
        if snapshot in self.snapshots[instance.name]:
            self.snapshots[instance.name].remove(snapshot)
        return self._ok()

    def remote_artifacts(self) -> int:
        """Return the number of snapshots and images still present."""
        return sum(len(v) for v in self.snapshots.values()) + sum(
            len(v) for v in self.images.values()
        )


def _instance_from_alias(alias: str) -> str:
    # img-backup-<instance>-<YYYY-MM-DD>-<token>
    body = alias[len("img-backup-") :]
    return body.rsplit("-", 4)[0]


@pytest.fixture
def fake_lxd() -> FakeLxd:
    """Return a fake provider with two instances in different projects."""
    return FakeLxd([Instance("web-01", "default"), Instance("db_main", "prod")])


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory building test configs rooted under ``tmp_path``."""

    def factory(**overrides: object) -> AppConfig:
        root = tmp_path / "backups"
        root.mkdir(exist_ok=True)
        base: dict[str, object] = {
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "require_root": False,
            "backups": {"root": str(root), "require_mount": False, "min_free_gib": 0},
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                merged = dict(base[key])  # type: ignore[arg-type]
                merged.update(value)
                base[key] = merged
            else:
                base[key] = value
        return load_config(tmp_path / "absent.yml", env={}, overrides=base)

    return factory


def fixed_clock(moment: datetime) -> Callable[[], datetime]:
    """Return a ``now`` callable frozen at *moment*."""
    return lambda: moment


def set_age(path: Path, days: float, *, now: float) -> None:
    """Set *path*'s mtime to *days* before *now*."""
    stamp = now - days * 86400
    os.utime(path, (stamp, stamp))
