"""branchvars stats — snapshot/diff storage statistics along a path."""
from __future__ import annotations

import pathlib

import typer

from branchvars.cli._io import echo_json, require_path, require_tree
from branchvars.core.variable_store import VariableStore
from branchvars.services.branch_variables import BranchVariableManager


def stats(
    tree_file: pathlib.Path = typer.Argument(..., help="Tree JSON file."),
    node_id: str = typer.Argument(..., help="Last node of the path to measure."),
    as_json: bool = typer.Option(False, "--json", help="Emit statistics as JSON."),
) -> None:
    """Count snapshots and diffs on the path from the root to NODE_ID."""
    tree = require_tree(tree_file)
    path = require_path(tree, node_id)

    result = BranchVariableManager(VariableStore("cli")).get_storage_statistics(path)

    if as_json:
        echo_json(result.to_dict())
        return

    typer.echo(f"Storage along root → '{node_id}'")
    typer.echo(f"  nodes:              {result.total_nodes}")
    typer.echo(f"  snapshots:          {result.snapshot_count}")
    typer.echo(f"  diffs:              {result.diff_count}")
    typer.echo(f"  total size:         {result.total_size}")
    typer.echo(f"  average diff size:  {result.average_diff_size:.1f}")
    typer.echo(f"  compression ratio:  {result.compression_ratio:.2f}")
