"""
Scoped VariableStore for a single conversation tree.

This is the **live** variable state the generated text mutates.  Branch
nodes persist snapshots or diffs of it; switching branches replaces its
contents wholesale.

Key principles:
1. Four independently rooted scopes: global, local, message, cache
2. Paths are dotted strings; ``[n]`` list indices are normalized to ``.n``
3. Every mutation appends a ChangeRecord to a bounded ledger and is
   delivered to update listeners as a VariableUpdateEvent
4. Malformed input never raises; it is logged and ignored

Architecture:
    VariableStore (per conversation, registry-managed)
        └── scopes        (nested dict per Scope)
        └── legacy mirror (flat dotted-path view of the global scope)
        └── change ledger (bounded, cleared on load_snapshot)
        └── update listeners (called per write; failures are logged)
"""

from __future__ import annotations

import logging
import uuid
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from branchvars.config import settings
from branchvars.contracts.json_types import (
    ChangeRecordDict,
    ScopedState,
    VariableUpdateEventDict,
    jnum,
)
from branchvars.core.paths import (
    MISSING,
    assign,
    flatten,
    join_path,
    normalize_path,
    remove,
    resolve,
)

logger = logging.getLogger(__name__)


class Scope(str, Enum):
    """Variable scopes.  Only ``global`` is branched; the rest are per-turn."""
    GLOBAL = "global"
    LOCAL = "local"
    MESSAGE = "message"
    CACHE = "cache"


class ChangeOperation(str, Enum):
    """Ledger operation tags."""
    SET = "set"
    ADD = "add"
    INC = "inc"
    DEC = "dec"
    DELETE = "delete"


ScopeLike = Union[Scope, str]


@dataclass
class ChangeRecord:
    """A single variable mutation."""
    path: str
    old_value: Any
    new_value: Any
    operation: ChangeOperation
    scope: Scope = Scope.GLOBAL
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> ChangeRecordDict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "path": self.path,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "operation": self.operation.value,
            "scope": self.scope.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class VariableUpdateEvent:
    """Delivered to update listeners after every applied write."""
    path: str
    old_value: Any
    new_value: Any
    operation: ChangeOperation
    scope: Scope
    reason: Optional[str]
    timestamp: str

    @classmethod
    def from_record(cls, record: ChangeRecord) -> VariableUpdateEvent:
        return cls(
            path=record.path,
            old_value=deepcopy(record.old_value),
            new_value=deepcopy(record.new_value),
            operation=record.operation,
            scope=record.scope,
            reason=record.reason,
            timestamp=record.timestamp.isoformat(),
        )

    def to_dict(self) -> VariableUpdateEventDict:
        return {
            "path": self.path,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "operation": self.operation.value,
            "scope": self.scope.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }


UpdateListener = Callable[[VariableUpdateEvent], None]


def coerce_scope(scope: ScopeLike) -> Scope:
    """Map a scope name to ``Scope``; unknown names fall back to global."""
    if isinstance(scope, Scope):
        return scope
    try:
        return Scope(str(scope).strip().lower())
    except ValueError:
        logger.debug("Unknown scope %r, using global", scope)
        return Scope.GLOBAL


class VariableStore:
    """
    Scoped, path-addressed variable store with a bounded change ledger.

    Usage:
        store = VariableStore(conversation_id="abc-123")
        store.set("character.affinity", 3)
        store.increment("character.affinity", 2)
        store.get("character.affinity")          # 5
        store.get("missing.path", default=0)     # 0

        snapshot = store.export_snapshot()
        store.load_snapshot(snapshot)            # ledger cleared
    """

    def __init__(
        self,
        conversation_id: Optional[str] = None,
        *,
        history_limit: Optional[int] = None,
        history_retain: Optional[int] = None,
    ):
        self.conversation_id = conversation_id or str(uuid.uuid4())
        self.history_limit = history_limit if history_limit is not None else settings.history_limit
        retain = history_retain if history_retain is not None else settings.history_retain
        self.history_retain = min(retain, self.history_limit)

        self._scopes: dict[Scope, dict[str, Any]] = {s: {} for s in Scope}
        self._legacy: dict[str, Any] = {}
        self._history: list[ChangeRecord] = []
        self._listeners: list[UpdateListener] = []

        logger.debug("🏗️ VariableStore initialized: conv=%s", self.conversation_id[:8])

    @property
    def history_length(self) -> int:
        return len(self._history)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, path: str, scope: ScopeLike = Scope.GLOBAL, default: Any = None) -> Any:
        """Value at *path*, or *default* when it does not resolve."""
        segments = normalize_path(path)
        if segments is None:
            return default
        value = resolve(self._scopes[coerce_scope(scope)], segments)
        return default if value is MISSING else value

    def has(self, path: str, scope: ScopeLike = Scope.GLOBAL) -> bool:
        segments = normalize_path(path)
        if segments is None:
            return False
        return resolve(self._scopes[coerce_scope(scope)], segments) is not MISSING

    def scope_variables(self, scope: ScopeLike = Scope.GLOBAL) -> dict[str, Any]:
        """Deep copy of one scope's tree."""
        return deepcopy(self._scopes[coerce_scope(scope)])

    def legacy_variables(self) -> dict[str, Any]:
        """Flat ``dotted.path -> leaf`` view of the global scope (copy)."""
        return deepcopy(self._legacy)

    # =========================================================================
    # Writes
    # =========================================================================

    def set(
        self,
        path: str,
        value: Any,
        scope: ScopeLike = Scope.GLOBAL,
        *,
        reason: Optional[str] = None,
    ) -> bool:
        """Write *value* at *path*; ``False`` when the path is unusable."""
        segments = normalize_path(path)
        if segments is None:
            logger.debug("Ignoring set on invalid path %r", path)
            return False
        target = coerce_scope(scope)
        root = self._scopes[target]

        old = resolve(root, segments)
        new = deepcopy(value)
        if not assign(root, segments, new):
            logger.debug("Ignoring set on %r: list index out of range", path)
            return False

        self._after_write(target)
        self._record(
            segments,
            None if old is MISSING else old,
            new,
            ChangeOperation.ADD if old is MISSING else ChangeOperation.SET,
            target,
            reason,
        )
        return True

    def increment(
        self,
        path: str,
        delta: Union[int, float] = 1,
        scope: ScopeLike = Scope.GLOBAL,
        *,
        reason: Optional[str] = None,
    ) -> Optional[Union[int, float]]:
        """Add *delta*; a missing or non-numeric current value counts as 0."""
        return self._step(path, delta, ChangeOperation.INC, scope, reason)

    def decrement(
        self,
        path: str,
        delta: Union[int, float] = 1,
        scope: ScopeLike = Scope.GLOBAL,
        *,
        reason: Optional[str] = None,
    ) -> Optional[Union[int, float]]:
        """Subtract *delta*; a missing or non-numeric current value counts as 0."""
        return self._step(path, -delta, ChangeOperation.DEC, scope, reason)

    def delete(
        self,
        path: str,
        scope: ScopeLike = Scope.GLOBAL,
        *,
        reason: Optional[str] = None,
    ) -> bool:
        segments = normalize_path(path)
        if segments is None:
            return False
        target = coerce_scope(scope)
        root = self._scopes[target]
        old = resolve(root, segments)
        if old is MISSING or not remove(root, segments):
            return False

        self._after_write(target)
        self._record(segments, old, None, ChangeOperation.DELETE, target, reason)
        return True

    def initialize_defaults(
        self,
        defaults: Mapping[str, Any],
        scope: ScopeLike = Scope.GLOBAL,
        *,
        reason: Optional[str] = "defaults",
    ) -> list[str]:
        """
        Deep-merge *defaults* into a scope without overwriting anything.

        Only keys that are absent are written; nested mappings are merged
        key by key, and an existing non-mapping value keeps its whole
        subtree.  Returns the dotted paths that were added.
        """
        target = coerce_scope(scope)
        added: list[list[str]] = []
        self._merge_missing(self._scopes[target], defaults, [], added)
        if not added:
            return []

        self._after_write(target)
        root = self._scopes[target]
        for segments in added:
            self._record(segments, None, resolve(root, segments), ChangeOperation.ADD, target, reason)
        logger.info(
            "🌱 Initialized %d default variable(s) in %s scope of %s",
            len(added), target.value, self.conversation_id[:8],
        )
        return [join_path(segments) for segments in added]

    @staticmethod
    def _merge_missing(
        target: dict[str, Any],
        source: Mapping[str, Any],
        parent: list[str],
        added: list[list[str]],
    ) -> None:
        for key, value in source.items():
            segments = [*parent, str(key)]
            if key not in target:
                target[key] = deepcopy(value)
                added.append(segments)
            elif isinstance(target[key], dict) and isinstance(value, Mapping):
                VariableStore._merge_missing(target[key], value, segments, added)

    def _step(
        self,
        path: str,
        amount: Union[int, float],
        operation: ChangeOperation,
        scope: ScopeLike,
        reason: Optional[str] = None,
    ) -> Optional[Union[int, float]]:
        segments = normalize_path(path)
        if segments is None:
            logger.debug("Ignoring %s on invalid path %r", operation.value, path)
            return None
        target = coerce_scope(scope)
        root = self._scopes[target]

        old = resolve(root, segments)
        new = jnum(old) + amount
        if not assign(root, segments, new):
            logger.debug("Ignoring %s on %r: list index out of range", operation.value, path)
            return None

        self._after_write(target)
        self._record(segments, None if old is MISSING else old, new, operation, target, reason)
        return new

    # =========================================================================
    # Update listeners
    # =========================================================================

    def add_update_listener(self, listener: UpdateListener) -> None:
        """Call *listener* with a VariableUpdateEvent after every applied write."""
        self._listeners.append(listener)

    def remove_update_listener(self, listener: UpdateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, record: ChangeRecord) -> None:
        if not self._listeners:
            return
        event = VariableUpdateEvent.from_record(record)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.error(
                    "❌ Variable update listener failed for %s on %s",
                    event.path, self.conversation_id[:8], exc_info=True,
                )


    # =========================================================================
    # Snapshots
    # =========================================================================

    def export_snapshot(self) -> ScopedState:
        """Deep copy of all four scopes."""
        return {s.value: deepcopy(root) for s, root in self._scopes.items()}  # type: ignore[return-value]

    def load_snapshot(self, state: Mapping[str, Any]) -> None:
        """Replace every scope with *state*; missing scopes become empty.

        The change ledger is cleared: history is "since the last restore".
        """
        scopes: dict[Scope, dict[str, Any]] = {s: {} for s in Scope}
        for scope in Scope:
            value = state.get(scope.value) if isinstance(state, Mapping) else None
            if value is None:
                continue
            if not isinstance(value, Mapping):
                logger.warning(
                    "⚠️ Ignoring non-mapping %s scope in snapshot (%s)",
                    scope.value, type(value).__name__,
                )
                continue
            scopes[scope] = deepcopy(dict(value))

        self._scopes = scopes
        self._refresh_legacy()
        self._history = []
        logger.debug(
            "📸 Loaded snapshot into %s: %d global keys",
            self.conversation_id[:8], len(self._scopes[Scope.GLOBAL]),
        )

    # =========================================================================
    # Change ledger
    # =========================================================================

    def get_change_history(self, limit: Optional[int] = None) -> list[ChangeRecord]:
        """Most recent *limit* records (all when ``None``), oldest first."""
        records = self._history if limit is None else self._history[-limit:] if limit > 0 else []
        return deepcopy(records)

    def clear_history(self) -> None:
        self._history = []

    def _record(
        self,
        segments: list[str],
        old_value: Any,
        new_value: Any,
        operation: ChangeOperation,
        scope: Scope,
        reason: Optional[str] = None,
    ) -> ChangeRecord:
        record = ChangeRecord(
            path=join_path(segments),
            old_value=deepcopy(old_value),
            new_value=deepcopy(new_value),
            operation=operation,
            scope=scope,
            reason=reason,
        )
        self._history.append(record)
        if len(self._history) > self.history_limit:
            self._history = self._history[-self.history_retain:] if self.history_retain else []
        self._emit(record)
        return record

    def _after_write(self, scope: Scope) -> None:
        if scope is Scope.GLOBAL:
            self._refresh_legacy()

    def _refresh_legacy(self) -> None:
        self._legacy = flatten(self._scopes[Scope.GLOBAL])

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Debug summary of the whole store."""
        return {
            "conversation_id": self.conversation_id,
            "scopes": self.export_snapshot(),
            "legacy_variable_count": len(self._legacy),
            "history_length": len(self._history),
            "history": [r.to_dict() for r in self._history[-10:]],
        }


# =============================================================================
# Store Registry (conversation_id -> VariableStore)
# =============================================================================

_stores: dict[str, VariableStore] = {}


def get_or_create_store(conversation_id: str) -> VariableStore:
    """
    Get the existing store for a conversation or create a new one.

    One store per conversation tree; stores never share state.
    """
    if conversation_id in _stores:
        return _stores[conversation_id]

    store = VariableStore(conversation_id=conversation_id)
    _stores[conversation_id] = store
    return store


def clear_store(conversation_id: str) -> None:
    """Remove a store from the registry."""
    if conversation_id in _stores:
        del _stores[conversation_id]


def clear_all_stores() -> None:
    """Clear all stores (for testing)."""
    _stores.clear()
