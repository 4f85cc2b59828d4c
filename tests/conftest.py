"""Pytest configuration and fixtures."""
from __future__ import annotations

import json
import pathlib
from typing import Any, Callable

import pytest

from branchvars.core.variable_store import clear_all_stores
from branchvars.services.variable_session import clear_all_sessions


@pytest.fixture(autouse=True)
def _reset_registries():
    """Reset the store and session registries between tests to prevent cross-test pollution."""
    yield
    clear_all_sessions()
    clear_all_stores()


@pytest.fixture
def write_json(tmp_path: pathlib.Path) -> Callable[[str, Any], pathlib.Path]:
    """Write a JSON document under tmp_path and return its path."""

    def _write(name: str, payload: Any) -> pathlib.Path:
        path = tmp_path / name
        path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        return path

    return _write
