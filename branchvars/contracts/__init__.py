"""Shared data-shape contracts for branchvars."""
