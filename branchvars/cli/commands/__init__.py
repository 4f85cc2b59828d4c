"""branchvars CLI subcommands."""
