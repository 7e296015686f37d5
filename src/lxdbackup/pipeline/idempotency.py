"""Skip detection and orphan reclamation before a job runs."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ..archives import ArchiveStore, Tier
from ..providers.lxd import Instance, LxdError
from .models import (
    SNAPSHOT_RE,
    ActionResult,
    ActionStatus,
    BackupJob,
    attempt_cleanup,
    image_alias_pattern,
)

if TYPE_CHECKING:
    from ..logging import OperationScope


class OrphanApi(Protocol):
    """Provider operations used to find and delete leftovers."""

    def list_snapshots(self, instance: Instance, *, timeout: float | None = None) -> list[str]: ...

    def list_image_aliases(self, project: str, *, timeout: float | None = None) -> list[str]: ...

    def delete_snapshot(
        self, instance: Instance, snapshot: str, *, timeout: float | None = None
    ) -> object: ...

    def delete_image(self, alias: str, project: str, *, timeout: float | None = None) -> object: ...


class IdempotencyGuard:
    """Decide whether a job must run and clear what a failed run left behind."""

    def __init__(
        self,
        api: OrphanApi,
        store: ArchiveStore,
        *,
        timeout: float | None = None,
    ) -> None:
        """Bind the guard to the LXD *api* and archive *store*."""
        self.api = api
        self.store = store
        self.timeout = timeout

    def existing_archive(self, job: BackupJob) -> Path | None:
        """Return today's daily archive for the job's instance, if present."""
        return self.store.find(Tier.DAILY, job.instance.name, job.run_date)

    def purge_orphans(
        self,
        job: BackupJob,
        *,
        op: OperationScope | None = None,
    ) -> list[ActionResult]:
        """Delete dangling snapshots, images and partial exports for the instance.

        Every failure is recorded as ``NONFATAL``; nothing here may stop the
        job from being attempted.
        """
        instance = job.instance
        results: list[ActionResult] = []

        try:
            snapshots = self.api.list_snapshots(instance, timeout=self.timeout)
        except LxdError as exc:
            results.append(
                ActionResult("list snapshots", str(instance), ActionStatus.NONFATAL, str(exc))
            )
            snapshots = []
        for name in snapshots:
            if not SNAPSHOT_RE.match(name):
                continue
            results.append(
                attempt_cleanup(
                    "delete orphan snapshot",
                    f"{instance.name}/{name}",
                    lambda name=name: self.api.delete_snapshot(
                        instance, name, timeout=self.timeout
                    ),
                )
            )

        alias_re = image_alias_pattern(instance.name)
        try:
            aliases = self.api.list_image_aliases(instance.project, timeout=self.timeout)
        except LxdError as exc:
            results.append(
                ActionResult("list images", instance.project, ActionStatus.NONFATAL, str(exc))
            )
            aliases = []
        for alias in aliases:
            if not alias_re.match(alias):
                continue
            results.append(
                attempt_cleanup(
                    "delete orphan image",
                    alias,
                    lambda alias=alias: self.api.delete_image(
                        alias, instance.project, timeout=self.timeout
                    ),
                )
            )

        for path in self.store.partial_files(instance.name):
            try:
                path.unlink()
            except OSError as exc:
                results.append(
                    ActionResult("delete partial export", str(path), ActionStatus.NONFATAL, str(exc))
                )
            else:
                results.append(ActionResult("delete partial export", str(path), ActionStatus.OK))

        if op is not None:
            for result in results:
                op.add_step(
                    f"{instance}: {result.action}",
                    status="ok" if result.ok else "warning",
                    detail=result.detail or result.target,
                )
        for result in results:
            job.record(result)
        return results


__all__ = ["IdempotencyGuard", "OrphanApi"]
