"""Structured operation logging.

Every command runs inside :meth:`StructuredLogger.operation`. The scope
collects timestamped steps and exactly one result, then appends a single JSON
record to ``<logs_dir>/operations.jsonl`` when the block exits. When a console
is attached, steps are also echoed as a human readable, timestamped stream.

Logging must never take the backup run down with it: if the log directory
cannot be created or a write fails, the logger disables itself and carries on.
"""
from __future__ import annotations

import getpass
import json
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console

_STEP_STYLES = {
    "ok": "green",
    "info": "cyan",
    "skipped": "yellow",
    "warning": "yellow",
    "error": "red",
}


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on passwd database
        user = "unknown"
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


class OperationScope:
    """Accumulates steps and the final result for one operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Bind the scope to *logger* for *command*."""
        self._logger = logger
        self.command = command
        self.op_id = f"{datetime.now(tz=UTC).strftime('%Y%m%dT%H%M%S')}-{secrets.token_hex(3)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor = _current_actor()
        self.started_at = _now_iso()
        self._started = time.monotonic()
        self.lock_wait_ms: int | None = None
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    # Steps ---------------------------------------------------------
    def add_step(
        self,
        name: str,
        *,
        status: str = "info",
        detail: str | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an intermediate step and echo it to the console."""
        step: dict[str, object] = {"ts": _now_iso(), "name": name, "status": status}
        if detail:
            step["detail"] = detail
        if context:
            step["context"] = _sanitise(context)
        self.steps.append(step)
        self._logger.echo(name, status=status, detail=detail)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = wait_ms

    # Results -------------------------------------------------------
    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if changed is not None:
            result["changed"] = changed
        if backups is not None:
            result["backups"] = [str(item) for item in backups]
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written for this operation."""
        record: dict[str, object] = {
            "ts": self.started_at,
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "actor": self.actor,
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "steps": list(self.steps),
            "result": self.result or {"status": "unknown", "message": "No result recorded."},
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append-only JSONL logger for lxd-backup operations."""

    def __init__(self, logs_dir: Path, *, console: Console | None = None) -> None:
        """Prepare *logs_dir*; disable logging when it cannot be created."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / "operations.jsonl"
        self._console = console
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._enabled = False
            self._warn(f"Structured logging disabled ({self.logs_dir}: {exc}).")

    @property
    def operations_log_path(self) -> Path:
        """Location of the operations journal."""
        return self._operations_log_path

    def attach_console(self, console: Console | None) -> None:
        """Replace (or with ``None`` silence) the step echo console."""
        self._console = console

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, errors=[repr(exc)])
            raise
        finally:
            self._write(scope.to_record())

    def echo(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Print a timestamped line for a step when a console is attached."""
        if self._console is None:
            return
        style = _STEP_STYLES.get(status, "white")
        text = f"[{style}]{status.upper():<8}[/{style}] {name}"
        if detail:
            text += f": {detail}"
        self._console.log(text)

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            self._enabled = False
            self._warn(f"Structured logging disabled after write failure: {exc}")

    def _warn(self, message: str) -> None:
        if self._console is not None:
            self._console.log(f"[yellow]{message}[/yellow]")


__all__ = ["OperationScope", "StructuredLogger"]
