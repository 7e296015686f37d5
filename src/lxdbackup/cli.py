"""Typer-powered command line for ``lxd-backup``.

``lxd-backup run`` is what the systemd timer invokes once per day. The other
commands are operator conveniences for inspecting and pruning the archive
tree by hand.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .archives import ArchiveStore, Tier
from .config import AppConfig, ConfigError, load_config
from .errors import DependencyError, PreconditionError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .pipeline import JobResult, JobState
from .runner import BackupRunner, summarise

console = Console()
log_console = Console(stderr=True)

app = typer.Typer(
    help="Scheduled LXD instance backups with daily/weekly retention.",
    no_args_is_help=False,
)
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(config_app, name="config")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to lxd-backup's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit results as JSON.",
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    store: ArchiveStore


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir, console=log_console),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        store=ArchiveStore(config.backups.root, compression=config.backups.compression),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the lxd-backup version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"lxd-backup {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


@app.command("run")
def run_backups(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up every instance, then apply the retention policy."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    if json_output:
        runtime.logger.attach_console(None)

    with runtime.logger.operation(
        "run",
        args={"json": json_output},
        target={"kind": "backup", "root": str(config.backups.root)},
    ) as op:
        op.add_step("run.start", status="info", detail=f"root={config.backups.root}")
        try:
            with runtime.locks.run_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                summary = BackupRunner(config, store=runtime.store).run(op=op)
        except PreconditionError as exc:
            _command_error(op, f"Precondition failed: {exc}", rc=ExitCode.ENVIRONMENT)
        except DependencyError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        payload = summary.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            _render_run_table(summary.results)
            console.print(f"Summary: {summarise(summary.results)}")
            if summary.retention is not None:
                console.print(f"Retention removed {summary.retention.removed_count} archive(s).")

        created = [
            str(result.archive_path)
            for result in summary.results
            if result.state is JobState.DONE and result.archive_path is not None
        ]
        warnings = [
            f"{result.instance}: {result.error}" for result in summary.failed
        ]
        if summary.retention is not None:
            warnings.extend(summary.retention.errors)
        if warnings:
            op.warning(
                f"Backup run finished with issues ({summarise(summary.results)}).",
                warnings=warnings,
                changed=len(created),
                backups=created,
                context=payload,
            )
        else:
            op.success(
                f"Backup run finished ({summarise(summary.results)}).",
                changed=len(created),
                backups=created,
                context=payload,
            )


@app.command("prune")
def prune_archives(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply the retention policy without creating new archives."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    if json_output:
        runtime.logger.attach_console(None)

    with runtime.logger.operation(
        "prune",
        args={"json": json_output},
        target={"kind": "backup", "scope": "retention", "root": str(config.backups.root)},
    ) as op:
        try:
            with runtime.locks.run_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                report = BackupRunner(config, store=runtime.store).prune(op=op)
        except PreconditionError as exc:
            _command_error(op, f"Precondition failed: {exc}", rc=ExitCode.ENVIRONMENT)

        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"Removed {report.removed_count} archive(s).")
            for error in report.errors:
                console.print(f"[yellow]{error}[/yellow]")
        if report.errors:
            op.warning(
                "Retention finished with errors.",
                errors=report.errors,
                changed=report.removed_count,
                context=payload,
            )
        else:
            op.success("Retention applied.", changed=report.removed_count, context=payload)


@app.command("list")
def list_archives(
    ctx: typer.Context,
    tier: Tier | None = typer.Option(
        None,
        "--tier",
        "-t",
        case_sensitive=False,
        help="Limit output to one tier (daily or weekly).",
    ),
    instance: str | None = typer.Option(
        None,
        "--instance",
        "-i",
        help="Limit output to a single instance.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List archives on the storage target."""
    runtime = _get_runtime(ctx)
    tiers = [tier] if tier is not None else list(Tier)
    with runtime.logger.operation(
        "list",
        args={"tier": tier.value if tier else None, "instance": instance, "json": json_output},
        target={"kind": "archive", "root": str(runtime.config.backups.root)},
    ) as op:
        archives = [
            archive
            for current in tiers
            for archive in runtime.store.list_archives(current)
            if instance is None or archive.instance == instance
        ]
        if json_output:
            rows = []
            for archive in archives:
                entry = archive.to_dict()
                try:
                    entry["size_bytes"] = archive.path.stat().st_size
                except OSError:
                    entry["size_bytes"] = None
                rows.append(entry)
            console.print_json(data={"archives": rows})
            op.success("Reported archives (JSON).", changed=0)
            return

        if not archives:
            console.print("No archives found.")
            op.success("Reported archives.", changed=0)
            return

        table = Table(title="Archives")
        table.add_column("Tier")
        table.add_column("Instance")
        table.add_column("Date")
        table.add_column("Size", justify="right")
        table.add_column("Modified")
        for archive in archives:
            try:
                stat = archive.path.stat()
            except OSError:
                continue
            table.add_row(
                archive.tier.value,
                archive.instance,
                archive.date.isoformat(),
                _format_size(stat.st_size),
                datetime.fromtimestamp(stat.st_mtime).strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
        op.success("Reported archives.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Render the resolved configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        data = runtime.config.to_dict()
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(title="lxd-backup configuration")
        table.add_column("Key")
        table.add_column("Value")
        for key, value in _flatten(data):
            table.add_row(key, str(value))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def _render_run_table(results: Sequence[JobResult]) -> None:
    table = Table(title="Backup run")
    table.add_column("Instance")
    table.add_column("Project")
    table.add_column("State")
    table.add_column("Detail")
    styles = {
        JobState.DONE: "green",
        JobState.SKIPPED: "yellow",
        JobState.FAILED: "red",
    }
    for result in results:
        style = styles.get(result.state, "white")
        detail = result.error or str(result.archive_path or "")
        table.add_row(
            result.instance.name,
            result.instance.project,
            f"[{style}]{result.state.value}[/{style}]",
            detail,
        )
    console.print(table)


def _flatten(data: dict[str, object], prefix: str = "") -> list[tuple[str, object]]:
    rows: list[tuple[str, object]] = []
    for key, value in data.items():
        label = f"{prefix}{key}"
        if isinstance(value, dict):
            rows.extend(_flatten(value, f"{label}."))
        else:
            rows.append((label, value))
    return rows


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TiB"


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
