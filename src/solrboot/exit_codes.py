"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    UNREACHABLE = 3
    PROVIDER = 4
    CONFLICT = 5
    AUTH = 6
    CANCELLED = 130
