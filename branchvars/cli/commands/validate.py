"""branchvars validate — check that a node's state can be reconstructed.

Exit codes
----------
- 0 — the root→node path reaches a snapshot before any diff
- 1 — broken chain (diff-only or empty nodes before the first snapshot)
- 2 — tree file missing or invalid
"""
from __future__ import annotations

import logging
import pathlib

import typer

from branchvars.cli._io import echo_json, require_path, require_tree
from branchvars.cli.errors import ExitCode
from branchvars.core.variable_store import VariableStore
from branchvars.services.branch_variables import BranchVariableManager, ChainValidation

logger = logging.getLogger(__name__)


def _render_human(node_id: str, result: ChainValidation) -> None:
    if result.is_valid:
        typer.echo(f"✅ Variable chain to '{node_id}' is intact.")
        return
    typer.echo(f"❌ Variable chain to '{node_id}' is broken.")
    typer.echo(f"   Nodes before the first snapshot: {', '.join(result.missing_snapshots)}")


def validate(
    tree_file: pathlib.Path = typer.Argument(..., help="Tree JSON file."),
    node_id: str = typer.Argument(..., help="Node whose chain to check."),
    as_json: bool = typer.Option(False, "--json", help="Emit the result as JSON."),
) -> None:
    """Check the snapshot chain from the root to NODE_ID."""
    tree = require_tree(tree_file)
    path = require_path(tree, node_id)

    result = BranchVariableManager(VariableStore("cli")).validate_variable_state(path)

    if as_json:
        echo_json(result.to_dict())
    else:
        _render_human(node_id, result)

    if result.broken_chain:
        raise typer.Exit(code=ExitCode.USER_ERROR)
