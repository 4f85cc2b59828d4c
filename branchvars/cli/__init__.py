"""Command-line front end for branchvars (``branchvars`` console script)."""
