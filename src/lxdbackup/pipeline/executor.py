"""Four-stage backup pipeline: snapshot, publish, export, cleanup."""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ..archives import KNOWN_EXTENSIONS, ArchiveStore, Tier, archive_filename, partial_stem
from ..config import StageTimeouts
from ..errors import StageAPIError, StageError, StageTimeoutError
from ..providers.lxd import Instance, LxdError, LxdTimeoutError
from .models import ActionResult, ActionStatus, BackupJob, JobResult, JobState, attempt_cleanup

if TYPE_CHECKING:
    from ..logging import OperationScope


class ImageApi(Protocol):
    """Provider operations the pipeline depends on."""

    def create_snapshot(
        self, instance: Instance, snapshot: str, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]: ...

    def publish_image(
        self,
        instance: Instance,
        snapshot: str,
        alias: str,
        *,
        compression: str = "gzip",
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]: ...

    def export_image(
        self, alias: str, project: str, target: Path, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]: ...

    def delete_image(
        self, alias: str, project: str, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]: ...

    def delete_snapshot(
        self, instance: Instance, snapshot: str, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]: ...


class PipelineExecutor:
    """Run the backup pipeline for a single job.

    Every terminal state is returned as a :class:`JobResult`; stage errors never
    escape :meth:`execute`. Remote artifacts created by the job are reclaimed
    whether the export succeeded or not.
    """

    def __init__(
        self,
        api: ImageApi,
        store: ArchiveStore,
        *,
        timeouts: StageTimeouts | None = None,
        compression: str = "gzip",
    ) -> None:
        """Bind the executor to the LXD *api* and archive *store*."""
        self.api = api
        self.store = store
        self.timeouts = timeouts or StageTimeouts()
        self.compression = compression

    def execute(self, job: BackupJob, *, op: OperationScope | None = None) -> JobResult:
        """Drive *job* from ``PENDING`` to ``DONE`` or ``FAILED``."""
        started = time.monotonic()
        instance = job.instance

        job.transition(JobState.SNAPSHOTTING)
        try:
            self._stage(
                job,
                "snapshot",
                job.snapshot_name,
                lambda: self.api.create_snapshot(
                    instance, job.snapshot_name, timeout=self.timeouts.snapshot
                ),
                self.timeouts.snapshot,
                op,
            )
        except StageError as exc:
            return self._fail(job, exc, started)

        job.transition(JobState.PUBLISHING)
        try:
            self._stage(
                job,
                "publish",
                job.image_alias,
                lambda: self.api.publish_image(
                    instance,
                    job.snapshot_name,
                    job.image_alias,
                    compression=self.compression,
                    timeout=self.timeouts.publish,
                ),
                self.timeouts.publish,
                op,
            )
        except StageError as exc:
            self._cleanup(job, op, image=False)
            return self._fail(job, exc, started)

        job.transition(JobState.EXPORTING)
        export_error: StageError | None = None
        try:
            job.archive_path = self._export(job, op)
        except StageError as exc:
            export_error = exc

        self._cleanup(job, op, image=True)

        if export_error is not None:
            return self._fail(job, export_error, started)

        job.transition(JobState.DONE)
        _step(op, job, "done", "ok", str(job.archive_path))
        return JobResult(
            instance=instance,
            state=JobState.DONE,
            archive_path=job.archive_path,
            actions=tuple(job.actions),
            duration_ms=_elapsed_ms(started),
        )

    # Stages --------------------------------------------------------
    def _stage(
        self,
        job: BackupJob,
        stage: str,
        target: str,
        call: Callable[[], object],
        timeout: float,
        op: OperationScope | None,
    ) -> None:
        _step(op, job, stage, "info", target)
        try:
            call()
        except LxdTimeoutError as exc:
            job.record(ActionResult(stage, target, ActionStatus.FATAL, str(exc)))
            raise StageTimeoutError(stage, f"exceeded {timeout:g}s timeout") from exc
        except LxdError as exc:
            job.record(ActionResult(stage, target, ActionStatus.FATAL, str(exc)))
            raise StageAPIError(stage, str(exc)) from exc
        job.record(ActionResult(stage, target, ActionStatus.OK))

    def _export(self, job: BackupJob, op: OperationScope | None) -> Path:
        instance = job.instance
        daily_dir = self.store.tier_dir(Tier.DAILY)
        stem = daily_dir / partial_stem(instance.name, job.run_date, job.token)
        _remove_partials(stem)

        try:
            self._stage(
                job,
                "export",
                str(stem),
                lambda: self.api.export_image(
                    job.image_alias,
                    instance.project,
                    stem,
                    timeout=self.timeouts.export,
                ),
                self.timeouts.export,
                op,
            )
        except StageError:
            _remove_partials(stem)
            raise

        produced = _produced_files(stem)
        if len(produced) != 1:
            _remove_partials(stem)
            message = f"expected one exported file for {stem.name}, found {len(produced)}"
            job.record(ActionResult("export", str(stem), ActionStatus.FATAL, message))
            raise StageAPIError("export", message)

        exported = produced[0]
        extension = _extension_after(stem, exported)
        if extension is None:
            final = self.store.path_for(Tier.DAILY, instance.name, job.run_date)
        else:
            final = daily_dir / archive_filename(instance.name, job.run_date, extension)
        try:
            os.replace(exported, final)
        except OSError as exc:
            _remove_partials(stem)
            job.record(ActionResult("export", str(final), ActionStatus.FATAL, str(exc)))
            raise StageAPIError("export", f"failed to finalise {final}: {exc}") from exc
        try:
            os.chmod(final, 0o640)
        except OSError as exc:
            result = job.record(
                ActionResult("set archive mode", str(final), ActionStatus.NONFATAL, str(exc))
            )
            _step_for(op, job, result)
        return final

    def _cleanup(self, job: BackupJob, op: OperationScope | None, *, image: bool) -> None:
        instance = job.instance
        timeout = self.timeouts.cleanup
        if image:
            result = job.record(
                attempt_cleanup(
                    "delete image",
                    job.image_alias,
                    lambda: self.api.delete_image(
                        job.image_alias, instance.project, timeout=timeout
                    ),
                )
            )
            _step_for(op, job, result)
        result = job.record(
            attempt_cleanup(
                "delete snapshot",
                job.snapshot_name,
                lambda: self.api.delete_snapshot(instance, job.snapshot_name, timeout=timeout),
            )
        )
        _step_for(op, job, result)

    def _fail(self, job: BackupJob, exc: StageError, started: float) -> JobResult:
        job.transition(JobState.FAILED)
        return JobResult(
            instance=job.instance,
            state=JobState.FAILED,
            failed_stage=exc.stage,
            error=str(exc),
            actions=tuple(job.actions),
            duration_ms=_elapsed_ms(started),
        )


def _produced_files(stem: Path) -> list[Path]:
    directory = stem.parent
    if not directory.is_dir():
        return []
    prefix = f"{stem.name}."
    return sorted(
        entry
        for entry in directory.iterdir()
        if entry.is_file() and (entry.name == stem.name or entry.name.startswith(prefix))
    )


def _extension_after(stem: Path, produced: Path) -> str | None:
    """Return the archive extension LXD appended to *stem*, if recognised."""
    if produced.name == stem.name:
        return None
    suffix = produced.name[len(stem.name) + 1 :]
    return suffix if suffix in KNOWN_EXTENSIONS else None


def _remove_partials(stem: Path) -> None:
    for path in _produced_files(stem):
        try:
            path.unlink()
        except FileNotFoundError:
            continue


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _step(
    op: OperationScope | None,
    job: BackupJob,
    name: str,
    status: str,
    detail: str | None = None,
) -> None:
    if op is not None:
        op.add_step(f"{job.instance}: {name}", status=status, detail=detail)


def _step_for(op: OperationScope | None, job: BackupJob, result: ActionResult) -> None:
    status = "ok" if result.ok else "warning"
    _step(op, job, result.action, status, result.detail or result.target)


__all__ = ["ImageApi", "PipelineExecutor"]
