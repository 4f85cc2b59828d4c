"""Branch variable manager — snapshot/diff storage along a conversation tree.

Each committed node persists either a full snapshot of the global scope or a
diff against its parent's resolved state.  Any node's state is rebuilt by
replaying root→node: a snapshot replaces the accumulator, a diff is applied
on top of it.

Snapshot policy (first match wins):
  forced                        → snapshot
  no parent id / no parent state → snapshot
  differential storage disabled → snapshot
  diff longer than threshold    → snapshot   (only when snapshots enabled)
  ordinal % interval == 0       → snapshot   (only when snapshots enabled)
  otherwise                     → diff (possibly empty)

Boundary rules:
  - Reads the live VariableStore to build node data; writes to it only in
    restore_variable_state and repair_variable_state_chain.
  - Never mutates stored node data.
  - Never raises on malformed trees; failures come back as result objects.
"""

from __future__ import annotations

import json
import logging
import re
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from branchvars.config import settings
from branchvars.contracts.json_types import (
    ChainValidationDict,
    ScopedState,
    VariableStateSummary,
    is_number,
    jnum,
)
from branchvars.core.paths import MISSING, assign, join_path, normalize_path, remove, resolve
from branchvars.core.variable_store import VariableStore
from branchvars.models.tree import NodeVariableData, VariableChange, VariableMetadata

logger = logging.getLogger(__name__)

_TRAILING_DIGITS_RE = re.compile(r"(\d+)$")

ChangeLike = Union[VariableChange, Mapping[str, Any]]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class BranchVariableConfig(BaseModel):
    """Storage policy for node variable data."""

    model_config = ConfigDict(extra="forbid")

    enable_snapshots: bool = Field(default_factory=lambda: settings.enable_snapshots)
    enable_differential_storage: bool = Field(
        default_factory=lambda: settings.enable_differential_storage
    )
    max_snapshot_interval: int = Field(
        default_factory=lambda: settings.max_snapshot_interval, ge=1
    )
    compression_threshold: int = Field(
        default_factory=lambda: settings.compression_threshold, ge=0
    )


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ChainValidation:
    """Whether a root→node path can be reconstructed.

    ``missing_snapshots`` lists every node visited before the first snapshot;
    the chain is broken as soon as that list is non-empty.
    """

    is_valid: bool
    missing_snapshots: list[str] = field(default_factory=list)
    broken_chain: bool = False

    def to_dict(self) -> ChainValidationDict:
        return {
            "isValid": self.is_valid,
            "missingSnapshots": list(self.missing_snapshots),
            "brokenChain": self.broken_chain,
        }


@dataclass
class ChainRepairResult:
    """Outcome of rebuilding state from the last usable snapshot."""

    success: bool
    snapshot_node_id: Optional[str] = None
    nodes_replayed: int = 0
    state: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "snapshotNodeId": self.snapshot_node_id,
            "nodesReplayed": self.nodes_replayed,
            "state": self.state,
        }


@dataclass
class StorageStatistics:
    """Snapshot/diff counts and sizes along one path."""

    total_nodes: int = 0
    snapshot_count: int = 0
    diff_count: int = 0
    total_size: int = 0
    average_diff_size: float = 0.0
    compression_ratio: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "totalNodes": self.total_nodes,
            "snapshotCount": self.snapshot_count,
            "diffCount": self.diff_count,
            "totalSize": self.total_size,
            "averageDiffSize": self.average_diff_size,
            "compressionRatio": self.compression_ratio,
        }


# ---------------------------------------------------------------------------
# Diff computation and replay
# ---------------------------------------------------------------------------


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _equal(a: Any, b: Any) -> bool:
    """JSON equality: ``True`` and ``1`` are different values."""
    return a == b and isinstance(a, bool) == isinstance(b, bool)


def _change(segments: list[str], **fields: Any) -> VariableChange:
    """A change at *segments*; raw segments are kept when the dotted path is lossy."""
    path = join_path(segments)
    exact = normalize_path(path) == segments
    return VariableChange(path=path, segments=None if exact else list(segments), **fields)


def _changed_leaf(segments: list[str], old: Any, new: Any, timestamp: str) -> VariableChange:
    if is_number(old) and is_number(new):
        delta = new - old
        replay = old + abs(delta) if delta > 0 else old - abs(delta)
        if delta != 0 and replay == new:
            return _change(
                segments,
                old_value=old,
                new_value=abs(delta),
                operation="inc" if delta > 0 else "dec",
                timestamp=timestamp,
                delta=delta,
            )

    if isinstance(old, list) and isinstance(new, list):
        summary: dict[str, Any] = {
            "added": [deepcopy(v) for v in new if v not in old],
            "removed": [deepcopy(v) for v in old if v not in new],
        }
    else:
        summary = {"from": deepcopy(old), "to": deepcopy(new)}
    return _change(
        segments,
        old_value=deepcopy(old),
        new_value=deepcopy(new),
        operation="set",
        timestamp=timestamp,
        delta=summary,
    )


def _diff_mappings(
    old: Mapping[str, Any],
    new: Mapping[str, Any],
    parent: list[str],
    timestamp: str,
    changes: list[VariableChange],
) -> None:
    for key, old_value in old.items():
        segments = [*parent, str(key)]
        if key not in new:
            changes.append(_change(
                segments, old_value=deepcopy(old_value), new_value=None,
                operation="delete", timestamp=timestamp,
            ))
            continue
        new_value = new[key]
        if isinstance(old_value, Mapping) and isinstance(new_value, Mapping):
            _diff_mappings(old_value, new_value, segments, timestamp, changes)
        elif not _equal(old_value, new_value):
            changes.append(_changed_leaf(segments, old_value, new_value, timestamp))

    for key, new_value in new.items():
        if key in old:
            continue
        changes.append(_change(
            [*parent, str(key)], old_value=None, new_value=deepcopy(new_value),
            operation="add", timestamp=timestamp,
        ))


def compute_variable_changes(
    old: Mapping[str, Any],
    new: Mapping[str, Any],
    *,
    timestamp: Optional[str] = None,
    prefix: str = "",
) -> list[VariableChange]:
    """Key-wise diff of two nested mappings.

    Replaying the result onto *old* with ``apply_variable_changes`` yields
    *new*, whatever characters the keys contain.
    """
    parent = (normalize_path(prefix) or []) if prefix else []
    changes: list[VariableChange] = []
    _diff_mappings(old, new, parent, timestamp or _now(), changes)
    return changes


def apply_variable_changes(
    state: Mapping[str, Any],
    changes: Iterable[ChangeLike],
) -> dict[str, Any]:
    """Deep copy of *state* with *changes* applied in order."""
    result: dict[str, Any] = deepcopy(dict(state))
    for raw in changes:
        change = raw if isinstance(raw, VariableChange) else VariableChange.model_validate(raw)
        segments = change.segments if change.segments else normalize_path(change.path)
        if segments is None:
            logger.warning("⚠️ Skipping change with invalid path %r", change.path)
            continue

        if change.operation in ("set", "add"):
            assign(result, segments, deepcopy(change.new_value))
        elif change.operation == "delete":
            remove(result, segments)
        else:
            current = resolve(result, segments)
            base = jnum(None if current is MISSING else current)
            amount = change.new_value if is_number(change.new_value) else 1
            assign(result, segments, base + amount if change.operation == "inc" else base - amount)
    return result


def replay_path(path: Sequence[NodeVariableData]) -> dict[str, Any]:
    """Resolved state at the end of *path*; pure, touches no store."""
    state: dict[str, Any] = {}
    for node in path:
        if node.variable_snapshot is not None:
            state = deepcopy(node.variable_snapshot)
        elif node.variable_changes is not None:
            base = state.get("global")
            state["global"] = apply_variable_changes(
                base if isinstance(base, Mapping) else {}, node.variable_changes
            )
    return state


def _node_label(node: NodeVariableData, index: int) -> str:
    return getattr(node, "node_id", None) or f"#{index}"


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class BranchVariableManager:
    """
    Builds, restores, validates and repairs node variable data for one store.

    Usage:
        manager = BranchVariableManager(store)
        data = manager.create_variable_snapshot("n1", "root", parent_state, ordinal=1)
        manager.restore_variable_state("n1", tree.path_to("n1"))
    """

    def __init__(self, store: VariableStore, config: Optional[BranchVariableConfig] = None):
        self.store = store
        self._config = config.model_copy() if config is not None else BranchVariableConfig()

    def configure(self, **overrides: Any) -> BranchVariableConfig:
        """Replace config fields; invalid values raise ``pydantic.ValidationError``."""
        self._config = BranchVariableConfig.model_validate(
            {**self._config.model_dump(), **overrides}
        )
        logger.debug("🔧 Branch variable config updated: %s", overrides)
        return self.get_config()

    def get_config(self) -> BranchVariableConfig:
        return self._config.model_copy()

    # -- create --

    def create_variable_snapshot(
        self,
        node_id: str,
        parent_node_id: Optional[str] = None,
        parent_resolved_state: Optional[Mapping[str, Any]] = None,
        force_snapshot: bool = False,
        *,
        ordinal: Optional[int] = None,
    ) -> NodeVariableData:
        """Variable data for a new node from the live store's global scope."""
        timestamp = _now()
        current_global = self.store.scope_variables("global")

        changes: Optional[list[VariableChange]] = None
        if parent_resolved_state is not None:
            parent_global = parent_resolved_state.get("global")
            changes = compute_variable_changes(
                parent_global if isinstance(parent_global, Mapping) else {},
                current_global,
                timestamp=timestamp,
            )

        reason = self._snapshot_reason(node_id, parent_node_id, changes, force_snapshot, ordinal)
        if reason is None and changes is not None:
            data = NodeVariableData(
                variable_changes=changes,
                variable_metadata=VariableMetadata(
                    timestamp=timestamp,
                    has_changes=bool(changes),
                    parent_snapshot=True,
                    size=self._payload_size(node_id, [c.to_storage() for c in changes]),
                ),
            )
            logger.debug("Node %s: stored %d change(s) against %s", node_id, len(changes), parent_node_id)
            return data

        payload: Any = {"global": current_global}
        has_changes = bool(changes) if changes is not None else bool(current_global)
        data = NodeVariableData(
            variable_snapshot=payload,
            variable_metadata=VariableMetadata(
                timestamp=timestamp,
                has_changes=has_changes,
                parent_snapshot=False,
                size=self._payload_size(node_id, payload),
            ),
        )
        logger.info("📸 Node %s: full snapshot (%s)", node_id, reason)
        return data

    def _snapshot_reason(
        self,
        node_id: str,
        parent_node_id: Optional[str],
        changes: Optional[list[VariableChange]],
        force_snapshot: bool,
        ordinal: Optional[int],
    ) -> Optional[str]:
        """Why this node gets a full snapshot, or ``None`` for a diff."""
        cfg = self._config
        if force_snapshot:
            return "forced"
        if not parent_node_id:
            return "root"
        if changes is None:
            return "no parent state"
        if not cfg.enable_differential_storage:
            return "differential storage disabled"
        if cfg.enable_snapshots and len(changes) > cfg.compression_threshold:
            return f"{len(changes)} changes exceed threshold {cfg.compression_threshold}"
        if cfg.enable_snapshots and self._on_snapshot_interval(node_id, ordinal):
            return f"interval {cfg.max_snapshot_interval}"
        return None

    def _on_snapshot_interval(self, node_id: str, ordinal: Optional[int]) -> bool:
        if ordinal is None:
            match = _TRAILING_DIGITS_RE.search(node_id or "")
            if match is None:
                return False
            ordinal = int(match.group(1))
        return ordinal % self._config.max_snapshot_interval == 0

    @staticmethod
    def _payload_size(node_id: str, payload: Any) -> Optional[int]:
        try:
            return len(json.dumps(payload, separators=(",", ":"), ensure_ascii=False))
        except (TypeError, ValueError):
            logger.warning("⚠️ Could not measure variable payload of node %s", node_id, exc_info=True)
            return None

    # -- restore --

    def resolve_state(self, path: Sequence[NodeVariableData]) -> dict[str, Any]:
        """Resolved state at the end of *path* without touching the store."""
        return replay_path(path)

    def restore_variable_state(
        self,
        node_id: str,
        path: Sequence[NodeVariableData],
    ) -> ScopedState:
        """Rebuild the state at *node_id* and load it into the store."""
        try:
            state = replay_path(path)
            self.store.load_snapshot(state)
        except Exception:
            logger.error("❌ Failed to restore variable state for node %s", node_id, exc_info=True)
            return {}

        logger.info(
            "📸 Restored variable state for node %s (%d nodes, %d global keys)",
            node_id, len(path), len(state.get("global") or {}),
        )
        return self.store.export_snapshot()

    # -- validate / repair --

    def validate_variable_state(self, path: Sequence[NodeVariableData]) -> ChainValidation:
        """Check that the path reaches a snapshot before any diff or empty node."""
        missing: list[str] = []
        for index, node in enumerate(path):
            if node.has_snapshot:
                break
            missing.append(_node_label(node, index))

        result = ChainValidation(
            is_valid=not missing,
            missing_snapshots=missing,
            broken_chain=bool(missing),
        )
        if result.broken_chain:
            logger.warning(
                "⚠️ Broken variable chain: %d node(s) before the first snapshot (%s)",
                len(missing), ", ".join(missing),
            )
        return result

    def repair_variable_state_chain(self, path: Sequence[NodeVariableData]) -> ChainRepairResult:
        """Rebuild from the last snapshot on *path*, replaying the diffs after it."""
        try:
            anchor = next(
                (i for i in range(len(path) - 1, -1, -1) if path[i].has_snapshot),
                None,
            )
            if anchor is None:
                logger.warning("🔧 Repair failed: no snapshot on a %d-node path", len(path))
                return ChainRepairResult(success=False)

            state = replay_path(path[anchor:])
            replayed = sum(1 for node in path[anchor + 1:] if node.variable_changes is not None)
            self.store.load_snapshot(state)
        except Exception:
            logger.error("❌ Variable chain repair failed", exc_info=True)
            return ChainRepairResult(success=False)

        snapshot_id = _node_label(path[anchor], anchor)
        logger.info("🔧 Repaired variable chain from snapshot %s (%d diff(s) replayed)", snapshot_id, replayed)
        return ChainRepairResult(
            success=True,
            snapshot_node_id=snapshot_id,
            nodes_replayed=replayed,
            state=self.store.export_snapshot(),  # type: ignore[arg-type]
        )

    # -- reporting --

    def get_storage_statistics(self, path: Sequence[NodeVariableData]) -> StorageStatistics:
        stats = StorageStatistics(total_nodes=len(path))
        diff_sizes: list[int] = []
        for node in path:
            size = node.variable_metadata.size or 0
            stats.total_size += size
            if node.has_snapshot:
                stats.snapshot_count += 1
            elif node.variable_changes is not None:
                stats.diff_count += 1
                diff_sizes.append(size)

        if diff_sizes:
            stats.average_diff_size = sum(diff_sizes) / len(diff_sizes)
        stored = stats.diff_count + stats.snapshot_count
        stats.compression_ratio = stats.diff_count / stored if stored else 0.0
        return stats

    @staticmethod
    def get_variable_state_summary(node: NodeVariableData) -> VariableStateSummary:
        return {
            "hasSnapshot": node.has_snapshot,
            "hasChanges": node.variable_metadata.has_changes,
            "changesCount": node.changes_count,
            "timestamp": node.variable_metadata.timestamp or None,
        }

    def export_branch_variable_state(self, node: NodeVariableData) -> str:
        """Pretty JSON of everything a node stores, for debugging."""
        stored = node.to_storage()
        return json.dumps(
            {
                "nodeId": getattr(node, "node_id", None),
                "summary": self.get_variable_state_summary(node),
                "snapshot": stored.get("variableSnapshot"),
                "changes": stored.get("variableChanges", []),
                "metadata": stored.get("variableMetadata"),
            },
            indent=2,
            ensure_ascii=False,
            default=str,
        )
