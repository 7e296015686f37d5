"""Archive naming and the on-disk archive store.

Archives live under ``<root>/daily`` and ``<root>/weekly`` and are named
``<instance>_<YYYY-MM-DD>.<ext>``. Instance names may themselves contain
underscores, so parsing strips the trailing date and extension instead of
splitting on the separator.
"""
from __future__ import annotations

import os
import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date
from enum import Enum
from pathlib import Path

SEPARATOR = "_"
PARTIAL_PREFIX = "."
PARTIAL_MARKER = ".partial"

# Extension produced by ``lxc image export`` for each publish compression.
_EXTENSIONS: dict[str, str] = {
    "gzip": "tar.gz",
    "bzip2": "tar.bz2",
    "xz": "tar.xz",
    "lzma": "tar.lzma",
    "zstd": "tar.zst",
    "none": "tar",
}
KNOWN_EXTENSIONS: tuple[str, ...] = tuple(
    sorted(set(_EXTENSIONS.values()), key=len, reverse=True)
)

_ARCHIVE_RE = re.compile(
    r"^(?P<instance>.+)_(?P<date>\d{4}-\d{2}-\d{2})\.(?P<ext>"
    + "|".join(re.escape(ext) for ext in KNOWN_EXTENSIONS)
    + r")$"
)


class Tier(str, Enum):
    """Retention tier of an archive."""

    DAILY = "daily"
    WEEKLY = "weekly"


@dataclass(slots=True, frozen=True)
class Archive:
    """An archive file on the storage target."""

    instance: str
    date: date
    tier: Tier
    path: Path

    @property
    def mtime(self) -> float:
        """Last modification time of the archive file."""
        return self.path.stat().st_mtime

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance": self.instance,
            "date": self.date.isoformat(),
            "tier": self.tier.value,
            "path": str(self.path),
        }


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    return _EXTENSIONS.get(algorithm, "tar.gz")


def archive_filename(instance: str, run_date: date, extension: str) -> str:
    """Return the archive filename for *instance* on *run_date* with *extension*."""
    return f"{instance}{SEPARATOR}{run_date.isoformat()}.{extension}"


def archive_name(instance: str, run_date: date, algorithm: str = "gzip") -> str:
    """Return the canonical archive filename for *instance* on *run_date*."""
    return archive_filename(instance, run_date, compression_extension(algorithm))


def parse_archive_name(name: str) -> tuple[str, date] | None:
    """Return ``(instance, date)`` parsed from *name*, or ``None``."""
    if name.startswith(PARTIAL_PREFIX):
        return None
    match = _ARCHIVE_RE.match(name)
    if match is None:
        return None
    try:
        parsed = date.fromisoformat(match.group("date"))
    except ValueError:
        return None
    return match.group("instance"), parsed


def partial_stem(instance: str, run_date: date, token: str) -> str:
    """Return the hidden stem used while an export is in flight."""
    return f"{PARTIAL_PREFIX}{instance}{SEPARATOR}{run_date.isoformat()}.{token}{PARTIAL_MARKER}"


class ArchiveStore:
    """Locate, enumerate and lay out archives under a backup root."""

    def __init__(self, root: Path, *, compression: str = "gzip") -> None:
        """Bind the store to *root* using *compression* for new archive names."""
        self.root = root.expanduser()
        self.compression = compression

    def tier_dir(self, tier: Tier) -> Path:
        """Return the directory for *tier*."""
        return self.root / tier.value

    def ensure_layout(self) -> list[str]:
        """Create the ``daily`` and ``weekly`` directories when missing.

        Returns a message for every tier whose mode could not be tightened.
        """
        warnings: list[str] = []
        for tier in Tier:
            path = self.tier_dir(tier)
            path.mkdir(parents=True, exist_ok=True)
            try:
                os.chmod(path, 0o750)
            except OSError as exc:
                warnings.append(f"Cannot set mode 0750 on {path}: {exc}")
        return warnings

    def path_for(self, tier: Tier, instance: str, run_date: date) -> Path:
        """Return the canonical path of the archive for *instance* on *run_date*."""
        return self.tier_dir(tier) / archive_name(instance, run_date, self.compression)

    def find(self, tier: Tier, instance: str, run_date: date) -> Path | None:
        """Return an existing archive for the pair regardless of extension."""
        directory = self.tier_dir(tier)
        for ext in KNOWN_EXTENSIONS:
            candidate = directory / archive_filename(instance, run_date, ext)
            if candidate.is_file():
                return candidate
        return None

    def list_archives(self, tier: Tier) -> list[Archive]:
        """Return every parseable archive in *tier*, sorted by filename."""
        return sorted(self._iter_archives(tier), key=lambda archive: archive.path.name)

    def partial_files(self, instance: str) -> list[Path]:
        """Return leftover in-flight export files for *instance*."""
        directory = self.tier_dir(Tier.DAILY)
        if not directory.is_dir():
            return []
        prefix = f"{PARTIAL_PREFIX}{instance}{SEPARATOR}"
        pattern = re.compile(
            re.escape(prefix) + r"\d{4}-\d{2}-\d{2}\.[^.]+" + re.escape(PARTIAL_MARKER)
        )
        return sorted(
            entry for entry in directory.iterdir() if pattern.match(entry.name)
        )

    def _iter_archives(self, tier: Tier) -> Iterator[Archive]:
        directory = self.tier_dir(tier)
        if not directory.is_dir():
            return
        for entry in directory.iterdir():
            if not entry.is_file():
                continue
            parsed = parse_archive_name(entry.name)
            if parsed is None:
                continue
            instance, archive_date = parsed
            yield Archive(instance=instance, date=archive_date, tier=tier, path=entry)


__all__ = [
    "Archive",
    "ArchiveStore",
    "KNOWN_EXTENSIONS",
    "Tier",
    "archive_filename",
    "archive_name",
    "compression_extension",
    "parse_archive_name",
    "partial_stem",
]
