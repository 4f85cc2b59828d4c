"""branchvars — branching variable state for tree-structured roleplay conversations.

Public entry points:
  VariableStore            scoped, path-addressed live variables
  MutationCommandParser    extracts and applies variable instructions from text
  BranchVariableManager    per-node snapshot/diff storage, restore, validate, repair
  BranchVariableSession    per-conversation facade tying the three together
  BranchTree / TreeNode    minimal conversation tree
"""
from branchvars.config import settings
from branchvars.core.defaults import infer_default_value
from branchvars.core.mutation_parser import (
    CommandNotation,
    MutationCommand,
    MutationCommandParser,
    ProcessedText,
    coerce_value_literal,
)
from branchvars.core.variable_store import (
    ChangeOperation,
    ChangeRecord,
    Scope,
    UpdateListener,
    VariableStore,
    VariableUpdateEvent,
    clear_all_stores,
    clear_store,
    get_or_create_store,
)
from branchvars.errors import BranchVarsError, TreeFileError
from branchvars.models.tree import (
    BranchTree,
    NodeVariableData,
    TreeNode,
    VariableChange,
    VariableMetadata,
)
from branchvars.services.branch_variables import (
    BranchVariableConfig,
    BranchVariableManager,
    ChainRepairResult,
    ChainValidation,
    StorageStatistics,
    apply_variable_changes,
    compute_variable_changes,
)
from branchvars.services.variable_session import (
    BranchVariableSession,
    clear_all_sessions,
    clear_session,
    get_or_create_session,
)

__version__ = settings.app_version

__all__ = [
    "BranchTree",
    "BranchVarsError",
    "BranchVariableConfig",
    "BranchVariableManager",
    "BranchVariableSession",
    "ChainRepairResult",
    "ChainValidation",
    "ChangeOperation",
    "ChangeRecord",
    "CommandNotation",
    "MutationCommand",
    "MutationCommandParser",
    "NodeVariableData",
    "ProcessedText",
    "Scope",
    "StorageStatistics",
    "TreeFileError",
    "TreeNode",
    "UpdateListener",
    "VariableChange",
    "VariableMetadata",
    "VariableStore",
    "VariableUpdateEvent",
    "apply_variable_changes",
    "clear_all_sessions",
    "clear_all_stores",
    "clear_session",
    "clear_store",
    "coerce_value_literal",
    "compute_variable_changes",
    "get_or_create_session",
    "get_or_create_store",
    "infer_default_value",
]
