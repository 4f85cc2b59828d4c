"""branchvars CLI — Typer application root.

Entry point for the ``branchvars`` console script.  Every subcommand takes
positional file/node arguments, so each is registered as a plain
``@cli.command`` (not ``add_typer``): Click groups stop parsing options
once positional arguments start, which would break ``validate TREE NODE --json``.
"""
from __future__ import annotations

import logging

import typer

from branchvars.cli.commands import apply, inspect_state, repair, restore, stats, validate
from branchvars.config import settings

cli = typer.Typer(
    name="branchvars",
    help="Branching variable state for tree-structured roleplay conversations.",
    no_args_is_help=True,
)


@cli.callback()
def _main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    level = logging.DEBUG if verbose or settings.debug else getattr(
        logging, settings.log_level.upper(), logging.INFO
    )
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


cli.command("apply", help="Apply variable instructions in generated text.")(apply.apply)
cli.command("restore", help="Print the variable state resolved at a node.")(restore.restore)
cli.command("validate", help="Check the snapshot chain to a node.")(validate.validate)
cli.command("repair", help="Rebuild a node's state from its last snapshot.")(repair.repair)
cli.command("stats", help="Snapshot/diff storage statistics along a path.")(stats.stats)
cli.command("inspect", help="Report on or search a saved state file.")(inspect_state.inspect_state)


if __name__ == "__main__":
    cli()
