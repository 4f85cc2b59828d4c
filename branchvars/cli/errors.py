"""Exit-code contract for the branchvars CLI."""
from __future__ import annotations

import enum


class ExitCode(enum.IntEnum):
    """Standardised CLI exit codes.

    0 — success
    1 — user error (unknown node, broken chain, failed repair)
    2 — input file not found or invalid
    3 — internal error
    """

    SUCCESS = 0
    USER_ERROR = 1
    INVALID_INPUT = 2
    INTERNAL_ERROR = 3
