"""Canonical type definitions for JSON data and variable-state dicts.

This module is the **single source of truth for every named data shape** in
branchvars.  Import from here; do not redefine shapes ad hoc.

## When to use which type

Use ``JSONValue`` / ``JSONObject`` for variable values: variable contents are
produced by generated text and their shape is genuinely unknown.  For every
known structure (scoped state, ledger entries, wire records) use the named
TypedDict below.

Do **not** use ``JSONValue`` or ``JSONObject`` in Pydantic ``BaseModel``
fields — Pydantic v2 cannot resolve the recursive forward references.  Model
fields holding arbitrary variable content use ``Any``.

## Entity catalog

JSON primitives:
  JSONScalar            — str | int | float | bool | None
  JSONValue             — recursive JSON value
  JSONObject            — dict[str, JSONValue]

Variable state:
  ScopedState           — {global, local, message, cache} scope mappings
  ChangeRecordDict      — wire shape of one change-ledger entry
  VariableUpdateEventDict — payload of one update-listener event
  VariableChangeDict    — wire shape of one diff element (camelCase)
  VariableMetadataDict  — wire shape of a node's variableMetadata
  NodeStorageDict       — persisted per-node layout handed to callers

Debug / reporting:
  VariableStateSummary  — per-node summary used by debug exports
  ChainValidationDict   — wire shape of a chain validation result
"""

from __future__ import annotations

from typing import Literal

from typing_extensions import TypedDict

JSONScalar = str | int | float | bool | None
"""A JSON leaf value with no recursive structure."""

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
"""Recursive JSON value — the most precise mypy-safe alternative to ``Any``.

Use ``isinstance`` guards or ``is_number()`` to narrow before dereferencing.
"""

JSONObject = dict[str, JSONValue]
"""A JSON object with unknown key set (a scope root or a nested group)."""

ChangeOperationName = Literal["set", "add", "inc", "dec", "delete"]
"""Operation tag shared by ledger records and diff elements."""


# ═══════════════════════════════════════════════════════════════════════════════
# Scoped variable state
# ═══════════════════════════════════════════════════════════════════════════════

ScopedState = TypedDict(
    "ScopedState",
    {
        "global": JSONObject,
        "local": JSONObject,
        "message": JSONObject,
        "cache": JSONObject,
    },
    total=False,
)
"""All scopes of a store.  Every key is optional on input; node snapshots
only carry ``global``.  (Functional syntax because ``global`` is a keyword.)"""


class ChangeRecordDict(TypedDict):
    """One entry of a store's bounded change ledger."""

    timestamp: str
    path: str
    oldValue: JSONValue
    newValue: JSONValue
    operation: ChangeOperationName
    scope: str
    reason: str | None


class VariableUpdateEventDict(TypedDict):
    """Payload handed to store update listeners."""

    path: str
    oldValue: JSONValue
    newValue: JSONValue
    operation: ChangeOperationName
    scope: str
    reason: str | None
    timestamp: str


class VariableChangeDict(TypedDict, total=False):
    """One element of a node diff as persisted (camelCase)."""

    path: str
    oldValue: JSONValue
    newValue: JSONValue
    operation: ChangeOperationName
    timestamp: str
    delta: JSONValue
    segments: list[str]


class VariableMetadataDict(TypedDict, total=False):
    """A node's ``variableMetadata`` block as persisted."""

    timestamp: str
    hasChanges: bool
    parentSnapshot: bool
    size: int


class NodeStorageDict(TypedDict, total=False):
    """Per-node persisted layout: opaque JSON owned by the caller's storage."""

    nodeId: str
    parentNodeId: str | None
    variableSnapshot: ScopedState
    variableChanges: list[VariableChangeDict]
    variableMetadata: VariableMetadataDict


class VariableStateSummary(TypedDict):
    """Compact description of what a node stores."""

    hasSnapshot: bool
    hasChanges: bool
    changesCount: int
    timestamp: str | None


class ChainValidationDict(TypedDict):
    """Wire shape of a root→node chain validation."""

    isValid: bool
    missingSnapshots: list[str]
    brokenChain: bool


# ═══════════════════════════════════════════════════════════════════════════════
# Narrowing helpers
# ═══════════════════════════════════════════════════════════════════════════════


def is_number(v: object) -> bool:
    """True for int/float values, excluding ``bool`` (a JSON boolean is not a count)."""
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def jnum(v: object, default: int | float = 0) -> int | float:
    """Safely extract a number from a ``JSONValue``.

    Returns *default* when *v* is missing, boolean, or non-numeric::

        current = jnum(store.get("affinity"))   # 0 if absent or "high"
    """
    return v if is_number(v) else default  # type: ignore[return-value]
