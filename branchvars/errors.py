"""Exception types raised by branchvars.

The engine itself reports problems through result objects and logs; these
exceptions cover input that cannot be turned into engine objects at all.
"""
from __future__ import annotations

import pathlib
from typing import Optional


class BranchVarsError(Exception):
    """Base exception for branchvars errors."""


class TreeFileError(BranchVarsError):
    """Raised when a tree or state file is missing, unreadable or malformed."""

    def __init__(self, message: str, path: Optional[pathlib.Path] = None) -> None:
        super().__init__(message)
        self.path = path
