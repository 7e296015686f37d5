"""Safety gates evaluated before a run touches any instance."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from .config import GIB, AppConfig
from .errors import PreconditionError


@dataclass(slots=True, frozen=True)
class CapacityReport:
    """Free-space figures gathered by the capacity check."""

    path: Path
    total_bytes: int
    free_bytes: int
    required_bytes: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "total_bytes": self.total_bytes,
            "free_bytes": self.free_bytes,
            "required_bytes": self.required_bytes,
            "free_gib": round(self.free_bytes / GIB, 2),
        }


def check_privileges(require_root: bool) -> None:
    """Raise unless the process runs as root when *require_root* is set."""
    if require_root and os.geteuid() != 0:
        raise PreconditionError("lxd-backup must be run as root.")


def check_dependency(lxc_bin: str) -> str:
    """Return the resolved ``lxc`` binary or raise when it is missing."""
    resolved = shutil.which(lxc_bin)
    if resolved is None:
        raise PreconditionError(f"'{lxc_bin}' command not found.")
    return resolved


def check_mounted(root: Path, *, require_mount: bool) -> None:
    """Ensure *root* exists and, when required, is a mountpoint."""
    if not root.is_dir():
        raise PreconditionError(f"Backup root {root} does not exist.")
    if require_mount and not os.path.ismount(root):
        raise PreconditionError(
            f"{root} is not a mountpoint. Mount the backup share before running."
        )


def check_free_space(root: Path, required_bytes: int) -> CapacityReport:
    """Raise when *root* has less than *required_bytes* free."""
    try:
        usage = shutil.disk_usage(root)
    except OSError as exc:
        raise PreconditionError(f"Cannot determine free space under {root}: {exc}") from exc
    report = CapacityReport(
        path=root,
        total_bytes=usage.total,
        free_bytes=usage.free,
        required_bytes=required_bytes,
    )
    if usage.free < required_bytes:
        raise PreconditionError(
            f"Insufficient free space under {root} (need {required_bytes / GIB:.1f} GiB, "
            f"have {usage.free / GIB:.1f} GiB)."
        )
    return report


class CapacityGuard:
    """Verify the storage target is mounted and has room for a run."""

    def __init__(self, root: Path, *, min_free_bytes: int, require_mount: bool = True) -> None:
        """Bind the guard to *root* and its thresholds."""
        self.root = root
        self.min_free_bytes = min_free_bytes
        self.require_mount = require_mount

    def check(self) -> CapacityReport:
        """Run the mount and free-space checks in order."""
        check_mounted(self.root, require_mount=self.require_mount)
        return check_free_space(self.root, self.min_free_bytes)


def run_preflight(config: AppConfig) -> CapacityReport:
    """Evaluate every precondition for *config*; the first failure raises."""
    check_privileges(config.require_root)
    check_dependency(config.lxc_bin)
    guard = CapacityGuard(
        config.backups.root,
        min_free_bytes=config.backups.min_free_bytes,
        require_mount=config.backups.require_mount,
    )
    return guard.check()


__all__ = [
    "CapacityGuard",
    "CapacityReport",
    "check_dependency",
    "check_free_space",
    "check_mounted",
    "check_privileges",
    "run_preflight",
]
