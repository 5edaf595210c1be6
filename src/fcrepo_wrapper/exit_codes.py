"""Enumerations for ``fcrepo_wrapper`` CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes returned by the CLI."""

    OK = 0
    CONFIG = 2
    ARTIFACT = 3
    PROCESS = 4
