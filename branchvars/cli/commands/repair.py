"""branchvars repair — rebuild a node's state from the last usable snapshot."""
from __future__ import annotations

import logging
import pathlib

import typer

from branchvars.cli._io import echo_json, require_path, require_tree
from branchvars.cli.errors import ExitCode
from branchvars.core.variable_store import VariableStore
from branchvars.services.branch_variables import BranchVariableManager

logger = logging.getLogger(__name__)


def repair(
    tree_file: pathlib.Path = typer.Argument(..., help="Tree JSON file."),
    node_id: str = typer.Argument(..., help="Node whose chain to repair."),
    as_json: bool = typer.Option(False, "--json", help="Emit the repair result as JSON."),
) -> None:
    """Replay diffs after the last snapshot on the path to NODE_ID."""
    tree = require_tree(tree_file)
    path = require_path(tree, node_id)

    result = BranchVariableManager(VariableStore("cli")).repair_variable_state_chain(path)

    if as_json:
        echo_json(result.to_dict())
    elif result.success:
        typer.echo(
            f"🔧 Repaired '{node_id}' from snapshot '{result.snapshot_node_id}' "
            f"({result.nodes_replayed} diff(s) replayed)."
        )
        echo_json(result.state)
    else:
        typer.echo(f"❌ Cannot repair '{node_id}': no snapshot on its path.")

    if not result.success:
        raise typer.Exit(code=ExitCode.USER_ERROR)
