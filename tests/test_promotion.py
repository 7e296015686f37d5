"""Tests for weekly promotion."""
from __future__ import annotations

import shutil
from datetime import date
from pathlib import Path

import pytest

from lxdbackup.archives import ArchiveStore, Tier
from lxdbackup.pipeline import ActionStatus, JobResult, JobState, WeeklyPromoter
from lxdbackup.providers.lxd import Instance

WEB = Instance("web-01", "default")


@pytest.fixture
def store(tmp_path: Path) -> ArchiveStore:
    store = ArchiveStore(tmp_path / "backups")
    store.ensure_layout()
    return store


def _done(store: ArchiveStore) -> JobResult:
    archive = store.tier_dir(Tier.DAILY) / "web-01_2026-10-18.tar.gz"
    archive.write_bytes(b"sunday")
    return JobResult(instance=WEB, state=JobState.DONE, archive_path=archive)


def test_applies_on_configured_weekday(store: ArchiveStore) -> None:
    """The default promotion day is Sunday."""
    promoter = WeeklyPromoter(store)
    assert promoter.applies(date(2026, 10, 18))
    assert not promoter.applies(date(2026, 10, 17))
    assert WeeklyPromoter(store, weekly_day=6).applies(date(2026, 10, 17))


def test_promote_copies_archive_into_weekly_tier(store: ArchiveStore) -> None:
    """The weekly copy has the same name and content; the daily stays."""
    result = _done(store)

    action = WeeklyPromoter(store).promote(result)

    weekly = store.tier_dir(Tier.WEEKLY) / "web-01_2026-10-18.tar.gz"
    assert action.status is ActionStatus.OK
    assert weekly.read_bytes() == b"sunday"
    assert result.archive_path is not None and result.archive_path.exists()
    assert [p.name for p in store.tier_dir(Tier.WEEKLY).iterdir()] == [weekly.name]


def test_promote_failure_is_nonfatal(store: ArchiveStore, monkeypatch: pytest.MonkeyPatch) -> None:
    """A failed copy leaves no weekly file and reports a warning."""
    result = _done(store)

    def broken_copy(*_args: object, **_kwargs: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(shutil, "copy2", broken_copy)

    action = WeeklyPromoter(store).promote(result)

    assert action.status is ActionStatus.NONFATAL
    assert "disk full" in (action.detail or "")
    assert list(store.tier_dir(Tier.WEEKLY).iterdir()) == []


def test_promote_rejects_unfinished_jobs(store: ArchiveStore) -> None:
    """Only DONE jobs are promoted."""
    failed = JobResult(instance=WEB, state=JobState.FAILED)
    with pytest.raises(ValueError):
        WeeklyPromoter(store).promote(failed)
