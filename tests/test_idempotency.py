"""Tests for skip detection and orphan reclamation."""
from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
from conftest import FakeLxd

from lxdbackup.archives import ArchiveStore, Tier, partial_stem
from lxdbackup.pipeline import ActionStatus, BackupJob, IdempotencyGuard
from lxdbackup.providers.lxd import Instance

RUN_DATE = date(2026, 10, 18)
WEB = Instance("web-01", "default")


@pytest.fixture
def store(tmp_path: Path) -> ArchiveStore:
    store = ArchiveStore(tmp_path / "backups")
    store.ensure_layout()
    return store


def _job(instance: Instance = WEB) -> BackupJob:
    return BackupJob(instance=instance, run_date=RUN_DATE, token="020000")


def test_existing_archive_detected_for_same_date_only(store: ArchiveStore) -> None:
    """Only an archive for the same instance and date counts."""
    guard = IdempotencyGuard(FakeLxd([WEB]), store)
    daily = store.tier_dir(Tier.DAILY)
    (daily / "web-01_2026-10-17.tar.gz").write_bytes(b"yesterday")
    (daily / "web-01-db_2026-10-18.tar.gz").write_bytes(b"other instance")
    assert guard.existing_archive(_job()) is None

    today = daily / "web-01_2026-10-18.tar.zst"
    today.write_bytes(b"today")
    assert guard.existing_archive(_job()) == today


def test_purge_deletes_only_artifacts_owned_by_instance(store: ArchiveStore) -> None:
    """Orphans for web-01 are removed; web-01-db and unrelated names survive."""
    lxd = FakeLxd([WEB, Instance("web-01-db", "default")])
    lxd.snapshots["web-01"] = ["snap-backup-2026-10-17-020000", "manual-before-upgrade"]
    lxd.images["default"] = [
        "img-backup-web-01-2026-10-17-020000",
        "img-backup-web-01-db-2026-10-17-020000",
        "ubuntu-24.04",
    ]

    results = IdempotencyGuard(lxd, store).purge_orphans(_job())

    assert lxd.snapshots["web-01"] == ["manual-before-upgrade"]
    assert lxd.images["default"] == ["img-backup-web-01-db-2026-10-17-020000", "ubuntu-24.04"]
    assert {r.action for r in results} == {"delete orphan snapshot", "delete orphan image"}
    assert all(r.status is ActionStatus.OK for r in results)


def test_purge_removes_partial_exports(store: ArchiveStore) -> None:
    """Leftover in-flight exports for the instance are deleted locally."""
    daily = store.tier_dir(Tier.DAILY)
    leftover = daily / f"{partial_stem('web-01', date(2026, 10, 17), '020000')}.tar.gz"
    foreign = daily / f"{partial_stem('web-01-db', date(2026, 10, 17), '020000')}.tar.gz"
    leftover.write_bytes(b"trunc")
    foreign.write_bytes(b"trunc")

    job = _job()
    IdempotencyGuard(FakeLxd([WEB]), store).purge_orphans(job)

    assert not leftover.exists()
    assert foreign.exists()
    assert [a.action for a in job.actions] == ["delete partial export"]


def test_purge_failures_are_nonfatal(store: ArchiveStore) -> None:
    """Listing and deletion errors are recorded, never raised."""
    lxd = FakeLxd([WEB])
    lxd.images["default"] = ["img-backup-web-01-2026-10-17-020000"]
    lxd.fail("list_snapshots")
    lxd.fail("delete_image")

    job = _job()
    results = IdempotencyGuard(lxd, store).purge_orphans(job)

    assert [r.status for r in results] == [ActionStatus.NONFATAL, ActionStatus.NONFATAL]
    assert [r.action for r in results] == ["list snapshots", "delete orphan image"]
    assert job.actions == results
