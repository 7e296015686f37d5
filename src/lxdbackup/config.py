"""Configuration loader for lxd-backup.

Values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/lxd-backup/config.yml`` (or an override path).
3. Environment variables prefixed with ``LXD_BACKUP_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export LXD_BACKUP_BACKUPS__ROOT=/mnt/nas
    export LXD_BACKUP_RETENTION__WEEKLY_KEEP=6

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and handed to every component; nothing reads global state.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in packaging
    raise RuntimeError(
        "PyYAML is required to load lxd-backup configuration. Install with "
        "`pip install lxd-backup` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "LXD_BACKUP_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"

GIB = 1024**3


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RetentionPolicy:
    """Two-tier retention rules applied after every run."""

    daily_max_age_days: int = 7
    weekly_keep: int = 4

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "daily_max_age_days": self.daily_max_age_days,
            "weekly_keep": self.weekly_keep,
        }


@dataclass(frozen=True)
class StageTimeouts:
    """Per-stage timeouts in seconds, enforced by the caller."""

    snapshot: float = 300.0
    publish: float = 7200.0
    export: float = 3600.0
    cleanup: float = 300.0
    inventory: float = 120.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "snapshot": self.snapshot,
            "publish": self.publish,
            "export": self.export,
            "cleanup": self.cleanup,
            "inventory": self.inventory,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Storage target and archive production settings."""

    root: Path
    require_mount: bool = True
    min_free_gib: float = 50.0
    compression: str = "gzip"
    weekly_day: int = 7

    @property
    def daily_dir(self) -> Path:
        """Directory holding the daily tier."""
        return self.root / "daily"

    @property
    def weekly_dir(self) -> Path:
        """Directory holding the weekly tier."""
        return self.root / "weekly"

    @property
    def min_free_bytes(self) -> int:
        """Minimum free space expressed in bytes."""
        return int(self.min_free_gib * GIB)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "require_mount": self.require_mount,
            "min_free_gib": self.min_free_gib,
            "compression": self.compression,
            "weekly_day": self.weekly_day,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for lxd-backup."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    require_root: bool
    lxc_bin: str
    backups: BackupConfig
    timeouts: StageTimeouts
    retention: RetentionPolicy

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "require_root": self.require_root,
            "lxc_bin": self.lxc_bin,
            "backups": self.backups.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "retention": self.retention.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/lxd-backup/config.yml",
    "logs_dir": "/var/log/lxd-backup",
    "runtime_dir": "/run/lxd-backup",
    "lock_timeout": 5.0,
    "require_root": True,
    "lxc_bin": "lxc",
    "backups": {
        "root": "/mnt/backups",
        "require_mount": True,
        "min_free_gib": 50,
        "compression": "gzip",
        "weekly_day": 7,
    },
    "timeouts": {
        "snapshot": 300,
        "publish": 7200,
        "export": 3600,
        "cleanup": 300,
        "inventory": 120,
    },
    "retention": {
        "daily_max_age_days": 7,
        "weekly_keep": 4,
    },
}


SECTION_KEYS: dict[str, frozenset[str]] = {
    "backups": frozenset({"root", "require_mount", "min_free_gib", "compression", "weekly_day"}),
    "timeouts": frozenset({"snapshot", "publish", "export", "cleanup", "inventory"}),
    "retention": frozenset({"daily_max_age_days", "weekly_keep"}),
}
# Algorithms accepted by ``lxc publish --compression``.
ALLOWED_COMPRESSION = {"gzip", "bzip2", "xz", "lzma", "zstd", "none"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    resolved_env = os.environ if env is None else env
    if config_file:
        config_path = Path(config_file)
    else:
        config_path = Path(resolved_env.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"]))

    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    for source in (_read_file(config_path), _env_values(resolved_env), overrides or {}):
        _merge_into(merged, source)
    merged["config_file"] = str(config_path)

    _check_keys(merged)
    return _build_app_config(merged)


def _read_file(path: Path) -> Mapping[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return data


def _env_values(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``LXD_BACKUP_SECTION__KEY=value`` variables into a nested mapping."""
    values: dict[str, object] = {}
    for key, raw in env.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        node = values
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {key} conflicts with {part}.")
            node = child
        node[path[-1]] = _parse_env_value(raw)
    return values


def _parse_env_value(raw: str) -> object:
    try:
        return yaml.safe_load(raw.strip())
    except yaml.YAMLError:  # pragma: no cover - fall back to the literal text
        return raw.strip()


def _merge_into(target: dict[str, object], source: Mapping[str, object]) -> None:
    for key, value in source.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        else:
            target[key] = value


def _check_keys(raw: Mapping[str, object]) -> None:
    unknown = {str(key) for key in raw} - set(DEFAULTS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}.")
    for name, allowed in SECTION_KEYS.items():
        extra = {str(key) for key in _section(raw, name)} - allowed
        if extra:
            raise ConfigError(f"Unknown {name} configuration keys: {', '.join(sorted(extra))}.")

    compression = str(_section(raw, "backups").get("compression", "gzip")).lower()
    if compression not in ALLOWED_COMPRESSION:
        allowed_text = ", ".join(sorted(ALLOWED_COMPRESSION))
        raise ConfigError(
            f"Unsupported backup compression '{compression}'. Allowed: {allowed_text}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    backups_raw = _section(raw, "backups")
    weekly_day = _integer(backups_raw.get("weekly_day"), "backups.weekly_day", default=7)
    if not 1 <= weekly_day <= 7:
        raise ConfigError("backups.weekly_day must be an ISO weekday between 1 and 7.")
    backups = BackupConfig(
        root=_path(backups_raw.get("root"), "backups.root"),
        require_mount=_flag(
            backups_raw.get("require_mount"), "backups.require_mount", default=True
        ),
        # Zero disables the free-space threshold.
        min_free_gib=_number(
            backups_raw.get("min_free_gib"), "backups.min_free_gib", default=50.0, allow_zero=True
        ),
        compression=str(backups_raw.get("compression", "gzip")).lower(),
        weekly_day=weekly_day,
    )

    timeouts_raw = _section(raw, "timeouts")
    defaults = StageTimeouts().to_dict()
    timeouts = StageTimeouts(
        **{
            name: _number(timeouts_raw.get(name), f"timeouts.{name}", default=float(default))
            for name, default in defaults.items()
            if isinstance(default, (int, float))
        }
    )

    retention_raw = _section(raw, "retention")
    retention = RetentionPolicy(
        daily_max_age_days=_integer(
            retention_raw.get("daily_max_age_days"),
            "retention.daily_max_age_days",
            default=7,
            minimum=0,
        ),
        weekly_keep=_integer(
            retention_raw.get("weekly_keep"), "retention.weekly_keep", default=4, minimum=0
        ),
    )

    return AppConfig(
        config_file=_path(raw.get("config_file"), "config_file"),
        logs_dir=_path(raw.get("logs_dir"), "logs_dir"),
        runtime_dir=_path(raw.get("runtime_dir"), "runtime_dir"),
        lock_timeout=_number(raw.get("lock_timeout"), "lock_timeout", default=5.0),
        require_root=_flag(raw.get("require_root"), "require_root", default=True),
        lxc_bin=str(raw.get("lxc_bin") or "lxc"),
        backups=backups,
        timeouts=timeouts,
        retention=retention,
    )


def _section(raw: Mapping[str, object], name: str) -> Mapping[str, object]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {name} to be a mapping. Got {type(value).__name__}.")
    return value


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _flag(value: object, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _integer(value: object, label: str, *, default: int, minimum: int | None = None) -> int:
    if value is None:
        result = default
    elif isinstance(value, int) and not isinstance(value, bool):
        result = value
    elif isinstance(value, str):
        try:
            result = int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be an integer. Got {value!r}.")
    if minimum is not None and result < minimum:
        raise ConfigError(f"{label} must be at least {minimum}. Got {result}.")
    return result


def _number(value: object, label: str, *, default: float, allow_zero: bool = False) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        result = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if result < 0 or (result == 0 and not allow_zero):
        bound = "non-negative" if allow_zero else "greater than zero"
        raise ConfigError(f"{label} must be {bound}. Got {result}.")
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "RetentionPolicy",
    "StageTimeouts",
    "load_config",
]
