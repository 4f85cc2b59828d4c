"""File loading helpers shared by CLI commands.

``load_*`` functions raise ``TreeFileError``; the ``require_*`` wrappers turn
that into an echoed message and ``typer.Exit(2)`` for command callbacks.
Messages echo to stdout so ``typer.testing.CliRunner`` captures them in
``result.output``.
"""
from __future__ import annotations

import json
import logging
import pathlib
from typing import Any

import typer
from pydantic import ValidationError

from branchvars.cli.errors import ExitCode
from branchvars.errors import TreeFileError
from branchvars.models.tree import BranchTree, TreeNode

logger = logging.getLogger(__name__)


def _read_json(path: pathlib.Path) -> Any:
    if not path.is_file():
        raise TreeFileError(f"File not found: {path}", path)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise TreeFileError(f"Cannot read {path}: {exc}", path) from exc
    except json.JSONDecodeError as exc:
        raise TreeFileError(f"Invalid JSON in {path}: {exc}", path) from exc


def load_tree(path: pathlib.Path) -> BranchTree:
    """Tree file: a JSON list of stored nodes, or ``{"nodes": [...]}``."""
    data = _read_json(path)
    records = data.get("nodes") if isinstance(data, dict) else data
    if not isinstance(records, list):
        raise TreeFileError(f"{path}: expected a list of nodes or {{\"nodes\": [...]}}", path)
    try:
        return BranchTree.from_storage(records)
    except ValidationError as exc:
        raise TreeFileError(f"{path}: invalid node record: {exc.errors()[0]['msg']}", path) from exc
    except (ValueError, TypeError, AttributeError) as exc:
        raise TreeFileError(f"{path}: {exc}", path) from exc


def load_state(path: pathlib.Path) -> dict[str, Any]:
    """State file: a ScopedState JSON object."""
    data = _read_json(path)
    if not isinstance(data, dict):
        raise TreeFileError(f"{path}: expected a JSON object of scopes", path)
    return data


def write_state(path: pathlib.Path, state: dict[str, Any]) -> None:
    path.write_text(json.dumps(state, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    logger.debug("Wrote state to %s", path)


def echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def require_tree(path: pathlib.Path) -> BranchTree:
    try:
        return load_tree(path)
    except TreeFileError as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=ExitCode.INVALID_INPUT)


def require_state(path: pathlib.Path) -> dict[str, Any]:
    try:
        return load_state(path)
    except TreeFileError as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=ExitCode.INVALID_INPUT)


def require_path(tree: BranchTree, node_id: str) -> list[TreeNode]:
    """Root→node path, or exit 1 when the node is unknown."""
    if node_id not in tree:
        typer.echo(f"❌ Node '{node_id}' not found in tree ({len(tree)} nodes).")
        raise typer.Exit(code=ExitCode.USER_ERROR)
    return tree.path_to(node_id)
