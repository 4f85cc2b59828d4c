"""Branch variable session — the entry point for dialogue code.

A session bundles the live VariableStore, the mutation parser and the
snapshot/diff manager for one conversation tree.  Collaborators only:

  1. hand it generated text           → apply_generated_text
  2. ask for the state to persist     → export_current_state / commit_node
  3. ask for a branch switch          → switch_to_node
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from branchvars.config import settings
from branchvars.contracts.json_types import ScopedState
from branchvars.core.mutation_parser import MutationCommandParser, ProcessedText
from branchvars.core.variable_store import VariableStore, clear_store, get_or_create_store
from branchvars.models.tree import BranchTree, TreeNode
from branchvars.services.branch_variables import BranchVariableManager
from branchvars.services.variable_debug import expand_debug_directives

logger = logging.getLogger(__name__)


class BranchVariableSession:
    """
    Per-conversation facade over store, parser and manager.

    Usage:
        session = BranchVariableSession("conv-1")
        visible = session.apply_generated_text(model_output)
        session.commit_node(tree, "n3", parent_node_id="n2")
        session.switch_to_node(tree, "n1")
    """

    def __init__(
        self,
        conversation_id: Optional[str] = None,
        *,
        store: Optional[VariableStore] = None,
        parser: Optional[MutationCommandParser] = None,
        manager: Optional[BranchVariableManager] = None,
        expand_debug: Optional[bool] = None,
    ):
        if store is None:
            store = manager.store if manager is not None else VariableStore(conversation_id)
        self.store = store
        self.conversation_id = conversation_id or store.conversation_id
        self.parser = parser or MutationCommandParser()
        self.manager = manager or BranchVariableManager(store)
        self.expand_debug = settings.expand_debug_directives if expand_debug is None else expand_debug
        self.last_result: Optional[ProcessedText] = None

    def apply_generated_text(self, text: str, *, reference_texts: Iterable[str] = ()) -> str:
        """Apply the instructions in *text* and return what the reader should see."""
        try:
            result = self.parser.process(text, self.store, reference_texts=reference_texts)
            self.last_result = result
            cleaned = result.text
            if self.expand_debug:
                cleaned = expand_debug_directives(cleaned, self.store, self.manager.get_config())
            return cleaned
        except Exception:
            logger.error(
                "❌ Failed to apply generated text for %s", self.conversation_id[:8], exc_info=True
            )
            return text

    def export_current_state(self) -> ScopedState:
        return self.store.export_snapshot()

    def commit_node(
        self,
        tree: BranchTree,
        node_id: str,
        parent_node_id: Optional[str] = None,
        *,
        force_snapshot: bool = False,
    ) -> TreeNode:
        """Persist the live state as node *node_id* and add it to *tree*."""
        parent_state = None
        ordinal = 0
        if parent_node_id and parent_node_id in tree:
            parent_path = tree.path_to(parent_node_id)
            parent_state = self.manager.resolve_state(parent_path)
            ordinal = len(parent_path)
        elif parent_node_id:
            logger.warning(
                "⚠️ Parent %s of node %s is not in the tree; storing a full snapshot",
                parent_node_id, node_id,
            )

        data = self.manager.create_variable_snapshot(
            node_id,
            parent_node_id,
            parent_state,
            force_snapshot,
            ordinal=ordinal,
        )
        return tree.add(TreeNode.from_variable_data(node_id, parent_node_id, data))

    def switch_to_node(self, tree: BranchTree, node_id: str) -> ScopedState:
        """Load the state at *node_id* into the store, repairing the chain if needed."""
        path = tree.path_to(node_id)
        if not path:
            logger.warning("⚠️ Node %s is not in the tree; loading empty state", node_id)

        validation = self.manager.validate_variable_state(path)
        if validation.is_valid:
            state = self.manager.restore_variable_state(node_id, path)
        else:
            repair = self.manager.repair_variable_state_chain(path)
            if repair.success:
                state = repair.state  # type: ignore[assignment]
            else:
                logger.warning("⚠️ No usable snapshot for %s; replaying diffs from empty state", node_id)
                state = self.manager.restore_variable_state(node_id, path)

        stats = self.manager.get_storage_statistics(path)
        logger.info(
            "📸 Switched %s to node %s: %d snapshot(s), %d diff(s), ratio %.2f",
            self.conversation_id[:8], node_id,
            stats.snapshot_count, stats.diff_count, stats.compression_ratio,
        )
        return state


# =============================================================================
# Session Registry (conversation_id -> BranchVariableSession)
# =============================================================================

_sessions: dict[str, BranchVariableSession] = {}


def get_or_create_session(conversation_id: str) -> BranchVariableSession:
    """Session for a conversation, sharing that conversation's registry store."""
    if conversation_id in _sessions:
        return _sessions[conversation_id]

    session = BranchVariableSession(
        conversation_id, store=get_or_create_store(conversation_id)
    )
    _sessions[conversation_id] = session
    return session


def clear_session(conversation_id: str) -> None:
    """Remove a session and its store from the registries."""
    _sessions.pop(conversation_id, None)
    clear_store(conversation_id)


def clear_all_sessions() -> None:
    """Clear all sessions and their stores (for testing)."""
    for conversation_id in list(_sessions):
        clear_session(conversation_id)
