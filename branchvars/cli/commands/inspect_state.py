"""branchvars inspect — report on, or search, a saved variable state."""
from __future__ import annotations

import pathlib
from typing import Optional

import typer

from branchvars.cli._io import echo_json, require_state
from branchvars.core.variable_store import VariableStore
from branchvars.services.variable_debug import (
    export_variables_json,
    format_search_results,
    generate_variable_report,
    search_variables,
)


def inspect_state(
    state_file: pathlib.Path = typer.Argument(..., help="ScopedState JSON file."),
    search: Optional[str] = typer.Option(
        None, "--search", "-k", help="Only list variables whose key or value contains KW.", metavar="KW"
    ),
    case_sensitive: bool = typer.Option(
        False, "--case-sensitive", help="Match --search case-sensitively."
    ),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of a report."),
) -> None:
    """Print a variable report for STATE_FILE."""
    store = VariableStore("cli")
    store.load_snapshot(require_state(state_file))

    if search is not None:
        hits = search_variables(store, search, case_sensitive=case_sensitive)
        if as_json:
            echo_json([h.to_dict() for h in hits])
        else:
            typer.echo(format_search_results(search, hits))
        return

    if as_json:
        typer.echo(export_variables_json(store))
    else:
        typer.echo(generate_variable_report(store))
