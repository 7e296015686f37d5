"""Retention policy enforcement over the archive tree."""
from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .archives import Archive, ArchiveStore, Tier
from .config import RetentionPolicy

if TYPE_CHECKING:
    from .logging import OperationScope

SECONDS_PER_DAY = 86400


@dataclass(slots=True)
class RetentionReport:
    """Files removed (and removals that failed) by a retention pass."""

    expired: list[Path] = field(default_factory=list)
    rotated: dict[str, list[Path]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def removed_count(self) -> int:
        """Total number of archives deleted."""
        return len(self.expired) + sum(len(paths) for paths in self.rotated.values())

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "expired": [str(path) for path in self.expired],
            "rotated": {
                instance: [str(path) for path in paths]
                for instance, paths in sorted(self.rotated.items())
            },
            "errors": list(self.errors),
        }


class RetentionManager:
    """Apply daily expiry and weekly rotation to an :class:`ArchiveStore`."""

    def __init__(
        self,
        store: ArchiveStore,
        policy: RetentionPolicy | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Bind the manager to *store* and *policy*."""
        self.store = store
        self.policy = policy or RetentionPolicy()
        self._clock = clock

    def apply(self, *, op: OperationScope | None = None) -> RetentionReport:
        """Run daily expiry followed by weekly rotation."""
        report = RetentionReport()
        self.expire_daily(report, op=op)
        self.rotate_weekly(report, op=op)
        return report

    def expire_daily(
        self,
        report: RetentionReport | None = None,
        *,
        op: OperationScope | None = None,
    ) -> RetentionReport:
        """Delete daily archives older than ``daily_max_age_days`` whole days.

        Age is counted in whole days since the last modification, so a file
        aged seven days and some hours is still within a seven day window.
        """
        report = report if report is not None else RetentionReport()
        now = self._clock()
        for archive in self.store.list_archives(Tier.DAILY):
            try:
                age_days = int((now - archive.mtime) // SECONDS_PER_DAY)
            except FileNotFoundError:
                continue
            if age_days <= self.policy.daily_max_age_days:
                continue
            if self._delete(archive, report, op):
                report.expired.append(archive.path)
        return report

    def rotate_weekly(
        self,
        report: RetentionReport | None = None,
        *,
        op: OperationScope | None = None,
    ) -> RetentionReport:
        """Keep the newest ``weekly_keep`` weekly archives per instance."""
        report = report if report is not None else RetentionReport()
        groups: dict[str, list[tuple[float, Archive]]] = defaultdict(list)
        for archive in self.store.list_archives(Tier.WEEKLY):
            try:
                groups[archive.instance].append((archive.mtime, archive))
            except FileNotFoundError:
                continue

        keep = self.policy.weekly_keep
        for instance, entries in sorted(groups.items()):
            entries.sort(key=lambda item: (item[0], item[1].date), reverse=True)
            for _, archive in entries[keep:]:
                if self._delete(archive, report, op):
                    report.rotated.setdefault(instance, []).append(archive.path)
        return report

    def _delete(
        self,
        archive: Archive,
        report: RetentionReport,
        op: OperationScope | None,
    ) -> bool:
        try:
            archive.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            message = f"Failed to remove {archive.path}: {exc}"
            report.errors.append(message)
            if op is not None:
                op.add_step(f"retention.{archive.tier.value}", status="warning", detail=message)
            return False
        if op is not None:
            op.add_step(
                f"retention.{archive.tier.value}",
                status="ok",
                detail=f"removed {archive.path.name}",
            )
        return True


__all__ = ["RetentionManager", "RetentionReport"]
