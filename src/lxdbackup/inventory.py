"""Instance enumeration."""
from __future__ import annotations

from typing import Protocol

from .errors import DependencyError
from .providers.lxd import Instance, LxdError


class InstanceSource(Protocol):
    """Subset of the provider used for enumeration."""

    def list_instances(self, *, timeout: float | None = None) -> list[Instance]:
        """Return every instance across all projects."""
        ...


class InstanceEnumerator:
    """Produce the ordered, deduplicated work list for a run.

    The list is fetched once; later calls return the same tuple so the run
    never re-queries the API mid-flight.
    """

    def __init__(self, source: InstanceSource, *, timeout: float | None = None) -> None:
        """Bind the enumerator to *source*."""
        self._source = source
        self._timeout = timeout
        self._cached: tuple[Instance, ...] | None = None

    def enumerate(self) -> tuple[Instance, ...]:
        """Return ``(name, project)`` instances in API order without duplicates."""
        if self._cached is not None:
            return self._cached
        try:
            listed = self._source.list_instances(timeout=self._timeout)
        except LxdError as exc:
            raise DependencyError(f"Failed to enumerate instances: {exc}") from exc

        seen: set[tuple[str, str]] = set()
        ordered: list[Instance] = []
        for instance in listed:
            key = (instance.name, instance.project)
            if key in seen:
                continue
            seen.add(key)
            ordered.append(instance)
        self._cached = tuple(ordered)
        return self._cached


__all__ = ["InstanceEnumerator", "InstanceSource"]
