"""Provider interfaces for lxd-backup."""
from __future__ import annotations

from .lxd import Instance, LxdError, LxdProvider, LxdTimeoutError

__all__ = [
    "Instance",
    "LxdError",
    "LxdProvider",
    "LxdTimeoutError",
]
