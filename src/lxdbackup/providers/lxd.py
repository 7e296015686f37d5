"""LXD provider wrapping the ``lxc`` command line client."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote, urlsplit


class LxdError(RuntimeError):
    """Raised when an ``lxc`` invocation fails."""


class LxdTimeoutError(LxdError):
    """Raised when an ``lxc`` invocation exceeds its timeout."""


@dataclass(slots=True, frozen=True)
class Instance:
    """A backupable instance and the project it lives in."""

    name: str
    project: str = "default"

    def __str__(self) -> str:
        """Return ``project/name`` for log output."""
        return f"{self.project}/{self.name}"


@dataclass(slots=True)
class LxdProvider:
    """Drive snapshot/publish/export/delete operations through ``lxc``."""

    lxc_bin: str = "lxc"

    # Inventory -----------------------------------------------------
    def list_instances(self, *, timeout: float | None = None) -> list[Instance]:
        """Return every instance across all projects, in API order."""
        result = self._lxc(
            ["list", "--all-projects", "--format", "json"],
            timeout=timeout,
        )
        payload = _parse_json(result.stdout, "lxc list")
        if not isinstance(payload, list):
            raise LxdError("lxc list returned a non-list payload.")
        instances: list[Instance] = []
        for item in payload:
            if not isinstance(item, dict):
                raise LxdError("lxc list returned a malformed instance entry.")
            name = item.get("name")
            if not isinstance(name, str) or not name.strip():
                raise LxdError("lxc list returned an instance without a name.")
            project = item.get("project") or "default"
            instances.append(Instance(name=name.strip(), project=str(project)))
        return instances

    def list_snapshots(
        self,
        instance: Instance,
        *,
        timeout: float | None = None,
    ) -> list[str]:
        """Return snapshot names for *instance*."""
        path = (
            f"/1.0/instances/{quote(instance.name, safe='')}/snapshots"
            f"?project={quote(instance.project, safe='')}"
        )
        result = self._lxc(["query", "--request", "GET", path], timeout=timeout)
        payload = _parse_json(result.stdout, "lxc query snapshots")
        if not isinstance(payload, list):
            raise LxdError("Snapshot listing returned a non-list payload.")
        return [_snapshot_name(str(url)) for url in payload]

    def list_image_aliases(
        self,
        project: str,
        *,
        timeout: float | None = None,
    ) -> list[str]:
        """Return every image alias defined in *project*."""
        result = self._lxc(
            ["image", "list", "--project", project, "--format", "json"],
            timeout=timeout,
        )
        payload = _parse_json(result.stdout, "lxc image list")
        if not isinstance(payload, list):
            raise LxdError("lxc image list returned a non-list payload.")
        aliases: list[str] = []
        for image in payload:
            if not isinstance(image, dict):
                continue
            for alias in image.get("aliases") or []:
                if isinstance(alias, dict) and alias.get("name"):
                    aliases.append(str(alias["name"]))
        return aliases

    # Pipeline operations -------------------------------------------
    def create_snapshot(
        self,
        instance: Instance,
        snapshot: str,
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Create a stateless (disk only) snapshot named *snapshot*."""
        return self._lxc(
            ["snapshot", instance.name, snapshot, "--project", instance.project],
            timeout=timeout,
        )

    def publish_image(
        self,
        instance: Instance,
        snapshot: str,
        alias: str,
        *,
        compression: str = "gzip",
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Publish *snapshot* as a unified image under *alias*."""
        return self._lxc(
            [
                "publish",
                f"{instance.name}/{snapshot}",
                "--alias",
                alias,
                "--project",
                instance.project,
                "--compression",
                compression,
            ],
            timeout=timeout,
        )

    def export_image(
        self,
        alias: str,
        project: str,
        target: Path,
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Export the image *alias* to *target*.

        ``lxc`` appends an extension matching the image compression, so the
        produced file may not be exactly *target*; callers normalise the name.
        """
        return self._lxc(
            ["image", "export", alias, str(target), "--project", project],
            timeout=timeout,
        )

    def delete_image(
        self,
        alias: str,
        project: str,
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Delete the image referenced by *alias*."""
        return self._lxc(["image", "delete", alias, "--project", project], timeout=timeout)

    def delete_snapshot(
        self,
        instance: Instance,
        snapshot: str,
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Delete *snapshot* of *instance*."""
        return self._lxc(
            ["delete", f"{instance.name}/{snapshot}", "--project", instance.project],
            timeout=timeout,
        )

    # ------------------------------------------------------------------
    def _lxc(
        self,
        args: Sequence[str],
        *,
        timeout: float | None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.lxc_bin, *args]
        error_prefix = " ".join(command[:3])
        try:
            result = subprocess.run(  # noqa: S603 - controlled command execution
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise LxdError(f"{self.lxc_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise LxdTimeoutError(f"{error_prefix} timed out after {timeout}s") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise LxdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def _snapshot_name(url: str) -> str:
    # Non-default projects come back as .../snapshots/<name>?project=<p>.
    path = urlsplit(url).path.rstrip("/")
    return unquote(path.rsplit("/", 1)[-1])


def _parse_json(text: str | None, label: str) -> object:
    try:
        return json.loads(text or "null")
    except json.JSONDecodeError as exc:
        raise LxdError(f"{label} returned invalid JSON: {exc}") from exc


__all__ = ["Instance", "LxdError", "LxdProvider", "LxdTimeoutError"]
