"""Conversation tree nodes and their per-node variable payloads.

Every committed node carries either a full ``variableSnapshot`` or a
``variableChanges`` diff against its parent's resolved state.  Node data is
frozen once built; reconstruction reads it and never writes back.

``BranchTree`` is the minimal tree the engine needs: it answers "what is the
path from the root to this node" and round-trips the persisted JSON layout.
"""
from __future__ import annotations

import logging
from typing import Any, ClassVar, Iterable, Iterator, Literal, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializerFunctionWrapHandler,
    model_serializer,
)

from branchvars.contracts.json_types import (
    NodeStorageDict,
    VariableChangeDict,
    VariableMetadataDict,
)

logger = logging.getLogger(__name__)


def to_camel(name: str) -> str:
    """snake_case field name → camelCase wire key."""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class CamelModel(BaseModel):
    """Frozen base model whose persisted form uses camelCase keys.

    Field access in Python stays snake_case; ``by_alias=True`` dumps and
    ``model_validate`` on stored records use the camelCase keys.  Fields
    named in ``omit_when_none`` are left out of dumps while they are ``None``.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    omit_when_none: ClassVar[frozenset[str]] = frozenset()

    @model_serializer(mode="wrap")
    def _omit_absent_fields(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data: dict[str, Any] = handler(self)
        for name in self.omit_when_none:
            if getattr(self, name) is None:
                data.pop(name, None)
                data.pop(to_camel(name), None)
        return data


# =============================================================================
# Node payload
# =============================================================================


class VariableChange(CamelModel):
    """One element of a node diff, relative to the parent's ``global`` scope.

    ``segments`` is set when a key on the path cannot be spelled as a dotted
    path (it contains ``.``, brackets or edge whitespace, or is empty); replay
    then uses it instead of re-parsing ``path``.
    """

    omit_when_none: ClassVar[frozenset[str]] = frozenset({"delta", "segments"})

    path: str
    old_value: Any = None
    new_value: Any = None
    operation: Literal["set", "add", "inc", "dec", "delete"]
    timestamp: str = ""
    delta: Any = None
    segments: Optional[list[str]] = None

    def to_storage(self) -> VariableChangeDict:
        return self.model_dump(by_alias=True)  # type: ignore[return-value]


class VariableMetadata(CamelModel):
    """Bookkeeping stored next to every node payload."""

    omit_when_none: ClassVar[frozenset[str]] = frozenset({"size"})

    timestamp: str = ""
    has_changes: bool = False
    parent_snapshot: bool = False
    size: Optional[int] = None

    def to_storage(self) -> VariableMetadataDict:
        return self.model_dump(by_alias=True)  # type: ignore[return-value]


class NodeVariableData(CamelModel):
    """What a node stores about variables: a snapshot or a diff, plus metadata."""

    omit_when_none: ClassVar[frozenset[str]] = frozenset(
        {"variable_snapshot", "variable_changes"}
    )

    variable_snapshot: Optional[dict[str, Any]] = None
    variable_changes: Optional[list[VariableChange]] = None
    variable_metadata: VariableMetadata = Field(default_factory=VariableMetadata)

    @property
    def has_snapshot(self) -> bool:
        return self.variable_snapshot is not None

    @property
    def is_diff_only(self) -> bool:
        return self.variable_snapshot is None and self.variable_changes is not None

    @property
    def changes_count(self) -> int:
        return len(self.variable_changes or [])

    def to_storage(self) -> NodeStorageDict:
        """Persisted camelCase layout; absent optional fields are omitted."""
        return self.model_dump(by_alias=True)  # type: ignore[return-value]


class TreeNode(NodeVariableData):
    """A committed conversation node."""

    node_id: str
    parent_node_id: Optional[str] = None

    @classmethod
    def from_variable_data(
        cls,
        node_id: str,
        parent_node_id: Optional[str],
        data: NodeVariableData,
    ) -> TreeNode:
        return cls(
            node_id=node_id,
            parent_node_id=parent_node_id,
            variable_snapshot=data.variable_snapshot,
            variable_changes=data.variable_changes,
            variable_metadata=data.variable_metadata,
        )

    @classmethod
    def from_storage(cls, record: Mapping[str, Any]) -> TreeNode:
        return cls.model_validate(dict(record))


# =============================================================================
# Tree
# =============================================================================


class BranchTree:
    """
    Nodes keyed by id, linked by ``parent_node_id``.

    A node whose parent id is empty, or names a node that is not in the tree,
    starts its own root→node path.

    Usage:
        tree = BranchTree()
        tree.add(root)
        tree.add(child)
        [n.node_id for n in tree.path_to(child.node_id)]   # ["root", "child"]
    """

    def __init__(self, nodes: Iterable[TreeNode] = ()) -> None:
        self._nodes: dict[str, TreeNode] = {}
        for node in nodes:
            self.add(node)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[TreeNode]:
        return iter(self._nodes.values())

    def add(self, node: TreeNode) -> TreeNode:
        if node.node_id in self._nodes:
            raise ValueError(f"Node {node.node_id!r} already exists in the tree")
        self._nodes[node.node_id] = node
        return node

    def get(self, node_id: str) -> Optional[TreeNode]:
        return self._nodes.get(node_id)

    def children(self, node_id: str) -> list[TreeNode]:
        return [n for n in self._nodes.values() if n.parent_node_id == node_id]

    def roots(self) -> list[TreeNode]:
        return [
            n for n in self._nodes.values()
            if not n.parent_node_id or n.parent_node_id not in self._nodes
        ]

    def path_to(self, node_id: str) -> list[TreeNode]:
        """Ordered root→node path; ``[]`` when the id is unknown."""
        path: list[TreeNode] = []
        seen: set[str] = set()
        current = self._nodes.get(node_id)
        while current is not None:
            if current.node_id in seen:
                logger.warning(
                    "⚠️ Cycle in parent links at node %s; truncating path to %s",
                    current.node_id, node_id,
                )
                break
            seen.add(current.node_id)
            path.append(current)
            if not current.parent_node_id:
                break
            current = self._nodes.get(current.parent_node_id)
        path.reverse()
        return path

    def depth(self, node_id: str) -> int:
        """Distance from the root (root = 0); ``-1`` for an unknown id."""
        return len(self.path_to(node_id)) - 1

    @classmethod
    def from_storage(cls, records: Iterable[Mapping[str, Any]]) -> BranchTree:
        return cls(TreeNode.from_storage(r) for r in records)

    def to_storage(self) -> list[NodeStorageDict]:
        return [n.to_storage() for n in self._nodes.values()]
