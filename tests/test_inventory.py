"""Tests for instance enumeration."""
from __future__ import annotations

import pytest
from conftest import FakeLxd

from lxdbackup.errors import DependencyError
from lxdbackup.inventory import InstanceEnumerator
from lxdbackup.providers.lxd import Instance


def test_enumerate_preserves_order_and_drops_duplicates() -> None:
    """Duplicates by (name, project) are removed; same names in other projects stay."""
    lxd = FakeLxd(
        [
            Instance("web", "default"),
            Instance("db", "default"),
            Instance("web", "default"),
            Instance("web", "staging"),
        ]
    )

    instances = InstanceEnumerator(lxd).enumerate()

    assert instances == (
        Instance("web", "default"),
        Instance("db", "default"),
        Instance("web", "staging"),
    )


def test_enumerate_is_fetched_once(fake_lxd: FakeLxd) -> None:
    """The work list is a snapshot; later calls do not re-query."""
    enumerator = InstanceEnumerator(fake_lxd, timeout=30)

    first = enumerator.enumerate()
    fake_lxd.instances.append(Instance("late", "default"))
    second = enumerator.enumerate()

    assert first is second
    assert [op for op, _ in fake_lxd.calls] == ["list"]
    assert fake_lxd.timeouts["list"] == 30


def test_enumerate_failure_is_dependency_error(fake_lxd: FakeLxd) -> None:
    """API failures surface as ``DependencyError``."""
    fake_lxd.fail("list")

    with pytest.raises(DependencyError, match="enumerate"):
        InstanceEnumerator(fake_lxd).enumerate()


def test_enumerate_empty_inventory() -> None:
    """No instances yields an empty work list."""
    assert InstanceEnumerator(FakeLxd()).enumerate() == ()
