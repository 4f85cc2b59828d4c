"""Core variable state: paths, the scoped store, and the mutation parser."""
