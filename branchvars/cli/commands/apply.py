"""branchvars apply — run generated text through the mutation parser.

Loads variable state from ``--state`` (empty when omitted), merges any
``--defaults`` for keys that are still missing, applies every
instruction found in TEXT_FILE and prints the cleaned text.  ``--write``
saves the updated state back to the state file.

Output (``--json``)::

    {
      "text": "She smiles.",
      "commands": [{"path": "affinity", "oldValue": 3, "newValue": 5, ...}],
      "warnings": [],
      "skipped": [],
      "initialized": [],
      "state": {"global": {"affinity": 5}, ...}
    }
"""
from __future__ import annotations

import logging
import pathlib
from typing import Optional

import typer

from branchvars.cli._io import echo_json, require_state, write_state
from branchvars.cli.errors import ExitCode
from branchvars.core.variable_store import VariableStore
from branchvars.services.variable_session import BranchVariableSession

logger = logging.getLogger(__name__)


def apply(
    text_file: pathlib.Path = typer.Argument(..., help="File containing generated text."),
    state: Optional[pathlib.Path] = typer.Option(
        None, "--state", "-s", help="ScopedState JSON file to start from."
    ),
    write: bool = typer.Option(
        False, "--write", "-w", help="Save the updated state back to --state."
    ),
    defaults: Optional[pathlib.Path] = typer.Option(
        None, "--defaults", "-d",
        help="JSON object of default global variables; only missing keys are added.",
    ),
    as_json: bool = typer.Option(
        False, "--json", help="Emit commands, warnings and state as JSON."
    ),
) -> None:
    """Apply variable instructions in generated text and print the cleaned text."""
    if write and state is None:
        typer.echo("❌ --write requires --state FILE.")
        raise typer.Exit(code=ExitCode.USER_ERROR)
    if not text_file.is_file():
        typer.echo(f"❌ File not found: {text_file}")
        raise typer.Exit(code=ExitCode.INVALID_INPUT)

    store = VariableStore("cli")
    if state is not None:
        store.load_snapshot(require_state(state))
    if defaults is not None:
        store.initialize_defaults(require_state(defaults))

    try:
        text = text_file.read_text(encoding="utf-8")
        session = BranchVariableSession(store=store)
        cleaned = session.apply_generated_text(text)
    except Exception as exc:
        typer.echo(f"❌ branchvars apply failed: {exc}")
        logger.error("❌ branchvars apply error: %s", exc, exc_info=True)
        raise typer.Exit(code=ExitCode.INTERNAL_ERROR)

    result = session.last_result
    new_state = store.export_snapshot()
    if write and state is not None:
        write_state(state, dict(new_state))

    if as_json:
        echo_json({
            "text": cleaned,
            "commands": [c.to_dict() for c in result.commands] if result else [],
            "warnings": result.warnings if result else [],
            "skipped": result.skipped if result else [],
            "initialized": result.initialized if result else [],
            "state": new_state,
        })
        return

    typer.echo(cleaned)
    if result is not None:
        for warning in result.warnings:
            typer.echo(f"⚠️  {warning}", err=True)
