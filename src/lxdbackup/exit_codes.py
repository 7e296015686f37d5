"""Enumerations for process exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes returned to the scheduler.

    A run that completed with skipped or failed instances still exits ``OK``;
    only fatal preconditions map to a non-zero code.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
