"""branchvars restore — print the variable state resolved at a tree node."""
from __future__ import annotations

import logging
import pathlib

import typer

from branchvars.cli._io import echo_json, require_path, require_tree
from branchvars.core.variable_store import VariableStore
from branchvars.services.branch_variables import BranchVariableManager

logger = logging.getLogger(__name__)


def restore(
    tree_file: pathlib.Path = typer.Argument(..., help="Tree JSON file."),
    node_id: str = typer.Argument(..., help="Node whose state to rebuild."),
    as_json: bool = typer.Option(False, "--json", help="Emit only the state as JSON."),
) -> None:
    """Rebuild the variable state at NODE_ID by replaying root→node."""
    tree = require_tree(tree_file)
    path = require_path(tree, node_id)

    manager = BranchVariableManager(VariableStore("cli"))
    state = manager.restore_variable_state(node_id, path)

    if not as_json:
        typer.echo(f"📸 State at node '{node_id}' ({len(path)} node(s) replayed):")
    echo_json(state)
