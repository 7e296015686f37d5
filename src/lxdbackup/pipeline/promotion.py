"""Weekly promotion of freshly produced daily archives."""

from __future__ import annotations

import os
import shutil
from datetime import date

from ..archives import ArchiveStore, Tier
from .models import ActionResult, ActionStatus, JobResult, JobState


class WeeklyPromoter:
    """Copy daily archives into the weekly tier on the configured weekday."""

    def __init__(self, store: ArchiveStore, *, weekly_day: int = 7) -> None:
        """Bind the promoter to *store*; *weekly_day* is an ISO weekday."""
        self.store = store
        self.weekly_day = weekly_day

    def applies(self, run_date: date) -> bool:
        """Return ``True`` when *run_date* is the promotion day."""
        return run_date.isoweekday() == self.weekly_day

    def promote(self, result: JobResult) -> ActionResult:
        """Copy the archive of a ``DONE`` job into the weekly tier.

        A failed copy is reported as ``NONFATAL``; the daily archive is left
        untouched either way.
        """
        if result.state is not JobState.DONE or result.archive_path is None:
            raise ValueError(f"Only completed jobs can be promoted ({result.instance}).")
        source = result.archive_path
        destination = self.store.tier_dir(Tier.WEEKLY) / source.name
        staging = destination.with_name(f".{destination.name}.partial")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, staging)
            os.replace(staging, destination)
        except OSError as exc:
            try:
                staging.unlink(missing_ok=True)
            except OSError:
                pass
            return ActionResult("promote weekly", str(destination), ActionStatus.NONFATAL, str(exc))
        return ActionResult("promote weekly", str(destination), ActionStatus.OK)


__all__ = ["WeeklyPromoter"]
