"""Pydantic models for persisted node data."""
from branchvars.models.tree import (
    BranchTree,
    CamelModel,
    NodeVariableData,
    TreeNode,
    VariableChange,
    VariableMetadata,
)

__all__ = [
    "BranchTree",
    "CamelModel",
    "NodeVariableData",
    "TreeNode",
    "VariableChange",
    "VariableMetadata",
]
