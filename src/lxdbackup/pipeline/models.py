"""Data models and naming helpers for the per-instance backup pipeline."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import CleanupWarning
from ..providers.lxd import Instance, LxdError

SNAPSHOT_PREFIX = "snap-backup-"
IMAGE_PREFIX = "img-backup-"
_DATE_TOKEN = r"\d{4}-\d{2}-\d{2}(?:-[0-9A-Za-z]+)?"
SNAPSHOT_RE = re.compile(rf"^{re.escape(SNAPSHOT_PREFIX)}{_DATE_TOKEN}$")


class JobState(str, Enum):
    """Pipeline state of a backup job."""

    PENDING = "pending"
    SNAPSHOTTING = "snapshotting"
    PUBLISHING = "publishing"
    EXPORTING = "exporting"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` for ``DONE``, ``FAILED`` and ``SKIPPED``."""
        return self in {JobState.DONE, JobState.FAILED, JobState.SKIPPED}


_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.SNAPSHOTTING, JobState.SKIPPED}),
    JobState.SNAPSHOTTING: frozenset({JobState.PUBLISHING, JobState.FAILED}),
    JobState.PUBLISHING: frozenset({JobState.EXPORTING, JobState.FAILED}),
    JobState.EXPORTING: frozenset({JobState.DONE, JobState.FAILED}),
}


class ActionStatus(str, Enum):
    """Outcome of a single side effect."""

    OK = "ok"
    NONFATAL = "nonfatal"
    FATAL = "fatal"


@dataclass(slots=True, frozen=True)
class ActionResult:
    """Result of a remote or local action performed for a job."""

    action: str
    target: str
    status: ActionStatus
    detail: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the action succeeded."""
        return self.status is ActionStatus.OK

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        payload: dict[str, Any] = {
            "action": self.action,
            "target": self.target,
            "status": self.status.value,
        }
        if self.detail:
            payload["detail"] = self.detail
        return payload


def make_token(moment: datetime) -> str:
    """Return the time-of-day uniqueness token for artifacts created at *moment*."""
    return moment.strftime("%H%M%S")


def snapshot_name(run_date: date, token: str) -> str:
    """Return the remote snapshot name for a job."""
    return f"{SNAPSHOT_PREFIX}{run_date.isoformat()}-{token}"


def image_alias(instance: str, run_date: date, token: str) -> str:
    """Return the published image alias for a job."""
    return f"{IMAGE_PREFIX}{instance}-{run_date.isoformat()}-{token}"


def image_alias_pattern(instance: str) -> re.Pattern[str]:
    """Return a pattern matching image aliases created for *instance* only."""
    return re.compile(rf"^{re.escape(IMAGE_PREFIX)}{re.escape(instance)}-{_DATE_TOKEN}$")


@dataclass(slots=True)
class BackupJob:
    """Ephemeral state for one instance within one run."""

    instance: Instance
    run_date: date
    token: str
    state: JobState = JobState.PENDING
    archive_path: Path | None = None
    actions: list[ActionResult] = field(default_factory=list)

    @property
    def snapshot_name(self) -> str:
        """Remote snapshot created by this job."""
        return snapshot_name(self.run_date, self.token)

    @property
    def image_alias(self) -> str:
        """Image alias published by this job."""
        return image_alias(self.instance.name, self.run_date, self.token)

    def transition(self, new_state: JobState) -> None:
        """Move to *new_state*, rejecting transitions the pipeline never makes."""
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise ValueError(
                f"Invalid job transition {self.state.value} -> {new_state.value} "
                f"for {self.instance}."
            )
        self.state = new_state

    def record(self, result: ActionResult) -> ActionResult:
        """Append *result* to the job's action log and return it."""
        self.actions.append(result)
        return result


@dataclass(slots=True, frozen=True)
class JobResult:
    """Terminal outcome of a job, returned to the run loop."""

    instance: Instance
    state: JobState
    archive_path: Path | None = None
    failed_stage: str | None = None
    error: str | None = None
    actions: Sequence[ActionResult] = field(default_factory=tuple)
    promotion: ActionResult | None = None
    duration_ms: int | None = None

    @property
    def cleanup_warnings(self) -> list[ActionResult]:
        """Return the non-fatal actions recorded for this job."""
        return [item for item in self.actions if item.status is ActionStatus.NONFATAL]

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        payload: dict[str, Any] = {
            "instance": self.instance.name,
            "project": self.instance.project,
            "state": self.state.value,
            "archive": str(self.archive_path) if self.archive_path else None,
            "actions": [item.to_dict() for item in self.actions],
        }
        if self.failed_stage:
            payload["failed_stage"] = self.failed_stage
        if self.error:
            payload["error"] = self.error
        if self.promotion is not None:
            payload["promotion"] = self.promotion.to_dict()
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


def attempt_cleanup(action: str, target: str, call: Callable[[], object]) -> ActionResult:
    """Run a best-effort deletion, converting failures into ``NONFATAL`` results."""
    try:
        call()
    except LxdError as exc:
        warning = CleanupWarning(f"{action} {target} failed: {exc}")
        return ActionResult(action, target, ActionStatus.NONFATAL, str(warning))
    return ActionResult(action, target, ActionStatus.OK)


__all__ = [
    "ActionResult",
    "ActionStatus",
    "BackupJob",
    "IMAGE_PREFIX",
    "JobResult",
    "JobState",
    "SNAPSHOT_PREFIX",
    "SNAPSHOT_RE",
    "attempt_cleanup",
    "image_alias",
    "image_alias_pattern",
    "make_token",
    "snapshot_name",
]
