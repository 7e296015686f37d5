"""Per-instance backup pipeline."""

from __future__ import annotations

from .executor import ImageApi, PipelineExecutor
from .idempotency import IdempotencyGuard, OrphanApi
from .models import (
    ActionResult,
    ActionStatus,
    BackupJob,
    JobResult,
    JobState,
    attempt_cleanup,
    image_alias,
    make_token,
    snapshot_name,
)
from .promotion import WeeklyPromoter

__all__ = [
    "ActionResult",
    "ActionStatus",
    "BackupJob",
    "IdempotencyGuard",
    "ImageApi",
    "JobResult",
    "JobState",
    "OrphanApi",
    "PipelineExecutor",
    "WeeklyPromoter",
    "attempt_cleanup",
    "image_alias",
    "make_token",
    "snapshot_name",
]
