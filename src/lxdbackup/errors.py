"""Error taxonomy shared by the backup run components."""
from __future__ import annotations


class LxdBackupError(RuntimeError):
    """Base class for lxd-backup failures."""


class PreconditionError(LxdBackupError):
    """A safety gate failed; the run aborts before any instance work."""


class DependencyError(LxdBackupError):
    """The management API could not be reached or returned garbage."""


class StageError(LxdBackupError):
    """A pipeline stage failed for a single instance."""

    def __init__(self, stage: str, message: str) -> None:
        """Record the *stage* that failed alongside *message*."""
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.detail = message


class StageTimeoutError(StageError):
    """A pipeline stage exceeded its timeout."""


class StageAPIError(StageError):
    """The management API rejected a pipeline stage."""


class CleanupWarning(LxdBackupError):
    """A best-effort deletion failed. Recorded, never raised past a component."""


__all__ = [
    "CleanupWarning",
    "DependencyError",
    "LxdBackupError",
    "PreconditionError",
    "StageAPIError",
    "StageError",
    "StageTimeoutError",
]
