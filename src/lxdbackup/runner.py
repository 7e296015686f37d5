"""Run orchestration: preflight, enumerate, back up each instance, prune."""
from __future__ import annotations

import time
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import TYPE_CHECKING

from .archives import ArchiveStore
from .config import AppConfig
from .errors import LxdBackupError
from .inventory import InstanceEnumerator
from .pipeline import (
    BackupJob,
    IdempotencyGuard,
    JobResult,
    JobState,
    PipelineExecutor,
    WeeklyPromoter,
    make_token,
)
from .preflight import CapacityReport, check_mounted, run_preflight
from .providers.lxd import Instance, LxdProvider
from .retention import RetentionManager, RetentionReport

if TYPE_CHECKING:
    from .logging import OperationScope


@dataclass(slots=True)
class RunSummary:
    """Everything a run produced, in processing order."""

    run_date: date
    capacity: CapacityReport | None = None
    results: list[JobResult] = field(default_factory=list)
    retention: RetentionReport | None = None

    @property
    def totals(self) -> dict[str, int]:
        """Return the number of jobs per terminal state."""
        counts = Counter(result.state.value for result in self.results)
        return {state.value: counts.get(state.value, 0) for state in _TERMINAL_STATES}

    @property
    def failed(self) -> list[JobResult]:
        """Jobs that ended in ``FAILED``."""
        return [result for result in self.results if result.state is JobState.FAILED]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "run_date": self.run_date.isoformat(),
            "capacity": self.capacity.to_dict() if self.capacity else None,
            "totals": self.totals,
            "results": [result.to_dict() for result in self.results],
            "retention": self.retention.to_dict() if self.retention else None,
        }


_TERMINAL_STATES = (JobState.DONE, JobState.SKIPPED, JobState.FAILED)


class BackupRunner:
    """Drive one unattended backup run end to end."""

    def __init__(
        self,
        config: AppConfig,
        *,
        provider: LxdProvider | None = None,
        store: ArchiveStore | None = None,
        now: Callable[[], datetime] = datetime.now,
        preflight: Callable[[AppConfig], CapacityReport] = run_preflight,
    ) -> None:
        """Wire the components for *config*."""
        self.config = config
        self.provider = provider or LxdProvider(lxc_bin=config.lxc_bin)
        self.store = store or ArchiveStore(
            config.backups.root, compression=config.backups.compression
        )
        self._now = now
        self._preflight = preflight
        timeouts = config.timeouts
        self.enumerator = InstanceEnumerator(self.provider, timeout=timeouts.inventory)
        self.guard = IdempotencyGuard(self.provider, self.store, timeout=timeouts.cleanup)
        self.executor = PipelineExecutor(
            self.provider,
            self.store,
            timeouts=timeouts,
            compression=config.backups.compression,
        )
        self.promoter = WeeklyPromoter(self.store, weekly_day=config.backups.weekly_day)
        self.retention = RetentionManager(self.store, config.retention, clock=time.time)

    def run(self, *, op: OperationScope | None = None) -> RunSummary:
        """Execute a full run.

        ``PreconditionError`` and ``DependencyError`` propagate before any
        instance is touched and before retention runs. Per-instance failures
        are captured in the returned summary.
        """
        run_date = self._now().date()
        summary = RunSummary(run_date=run_date)

        summary.capacity = self._preflight(self.config)
        _step(op, "preflight", "ok", f"{summary.capacity.free_bytes} bytes free")

        instances = self.enumerator.enumerate()
        _step(op, "inventory", "ok", f"{len(instances)} instance(s)")

        for warning in self.store.ensure_layout():
            _step(op, "layout", "warning", warning)

        for instance in instances:
            summary.results.append(self.process_instance(instance, run_date, op=op))

        _step(op, "retention", "info", "applying retention policy")
        summary.retention = self.retention.apply(op=op)
        return summary

    def process_instance(
        self,
        instance: Instance,
        run_date: date,
        *,
        op: OperationScope | None = None,
    ) -> JobResult:
        """Guard, execute and promote a single instance."""
        job = BackupJob(instance=instance, run_date=run_date, token=make_token(self._now()))
        started = time.monotonic()

        existing = self.guard.existing_archive(job)
        if existing is not None:
            job.transition(JobState.SKIPPED)
            _step(op, f"{instance}: skipped", "skipped", f"archive exists: {existing.name}")
            return JobResult(instance=instance, state=JobState.SKIPPED, archive_path=existing)

        try:
            self.guard.purge_orphans(job, op=op)
            result = self.executor.execute(job, op=op)
        except (LxdBackupError, OSError) as exc:
            _step(op, f"{instance}: failed", "error", str(exc))
            return JobResult(
                instance=instance,
                state=JobState.FAILED,
                failed_stage=job.state.value,
                error=str(exc),
                actions=tuple(job.actions),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        if result.state is JobState.FAILED:
            _step(op, f"{instance}: failed", "error", result.error)
            return result

        if self.promoter.applies(run_date):
            promotion = self.promoter.promote(result)
            _step(
                op,
                f"{instance}: promote weekly",
                "ok" if promotion.ok else "warning",
                promotion.detail or promotion.target,
            )
            result = replace(result, promotion=promotion)
        return result

    def prune(self, *, op: OperationScope | None = None) -> RetentionReport:
        """Apply retention only, after confirming the target is mounted."""
        check_mounted(self.config.backups.root, require_mount=self.config.backups.require_mount)
        return self.retention.apply(op=op)


def _step(op: OperationScope | None, name: str, status: str, detail: str | None) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


def summarise(results: Sequence[JobResult]) -> str:
    """Return a one-line human summary of *results*."""
    counts = Counter(result.state.value for result in results)
    return ", ".join(f"{counts.get(state.value, 0)} {state.value}" for state in _TERMINAL_STATES)


__all__ = ["BackupRunner", "RunSummary", "summarise"]
