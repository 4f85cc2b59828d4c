"""Read-only debugging views of a VariableStore.

Renders reports, JSON exports, keyword searches and change history, and
expands ``[DEBUG:...]`` directives embedded in generated text:

  [DEBUG:report]                 human-readable variable report
  [DEBUG:json] / [DEBUG:json:pretty=false]
  [DEBUG:search:<keyword>]
  [DEBUG:history] / [DEBUG:history:<n>]
  [DEBUG:branch]                 branch storage configuration

Nothing in this module mutates the store.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from branchvars.core.variable_store import Scope, ScopeLike, VariableStore, coerce_scope
from branchvars.services.branch_variables import BranchVariableConfig

logger = logging.getLogger(__name__)

_REPORT_MAX_DEPTH = 3
_REPORT_VALUE_WIDTH = 30
_DEFAULT_HISTORY_LIMIT = 10

_DIRECTIVE_RE = re.compile(
    r"\[DEBUG:(report|json|search|history|branch)(?::([^\]\n]*))?\]",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class VariableSearchHit:
    """A variable whose key or string value matched a search."""

    path: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "value": self.value}


def _display(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _truncate(text: str, width: int = _REPORT_VALUE_WIDTH) -> str:
    return text if len(text) <= width else text[:width] + "..."


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


def _structure_lines(obj: dict[str, Any], depth: int = 0) -> list[str]:
    if depth > _REPORT_MAX_DEPTH:
        return []
    lines: list[str] = []
    indent = "  " * (depth + 1)
    for key, value in obj.items():
        if isinstance(value, dict):
            lines.append(f"{indent}{key}/ (object)")
            lines.extend(_structure_lines(value, depth + 1))
        else:
            rendered = f"[{len(value)} items]" if isinstance(value, list) else _display(value)
            lines.append(f"{indent}{key}: {_truncate(rendered)}")
    return lines


def generate_variable_report(store: VariableStore) -> str:
    """Multi-line overview of the store's contents."""
    global_vars = store.scope_variables(Scope.GLOBAL)
    lines = [
        "=== Variable State Report ===",
        f"Generated: {datetime.now(timezone.utc).isoformat()}",
        "",
        f"📊 Global variables: {len(global_vars)}",
    ]
    if global_vars:
        lines.append("🌍 Global structure:")
        lines.extend(_structure_lines(global_vars))
    lines.append("")
    lines.append("🎯 Scoped variables:")
    for scope in Scope:
        lines.append(f"  {scope.value}: {len(store.scope_variables(scope))} variable(s)")
    lines.append("")
    lines.append(f"🕘 Change history: {store.history_length} record(s)")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def export_variables_json(store: VariableStore, pretty: bool = True) -> str:
    """Everything the store holds, as a JSON document."""
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "globalVariables": store.scope_variables(Scope.GLOBAL),
        "scopedVariables": {
            scope.value: store.scope_variables(scope)
            for scope in Scope
            if scope is not Scope.GLOBAL
        },
        "legacyVariables": store.legacy_variables(),
        "metadata": {
            "conversationId": store.conversation_id,
            "historyLength": store.history_length,
        },
    }
    return json.dumps(payload, indent=2 if pretty else None, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Search / history
# ---------------------------------------------------------------------------


def search_variables(
    store: VariableStore,
    keyword: str,
    case_sensitive: bool = False,
    scope: ScopeLike = Scope.GLOBAL,
) -> list[VariableSearchHit]:
    """Variables whose key, or string value, contains *keyword*."""
    if not keyword:
        return []
    needle = keyword if case_sensitive else keyword.lower()
    hits: list[VariableSearchHit] = []

    def fold(text: str) -> str:
        return text if case_sensitive else text.lower()

    def walk(obj: dict[str, Any], base: str) -> None:
        for key, value in obj.items():
            path = f"{base}.{key}" if base else str(key)
            key_match = needle in fold(str(key))
            value_match = isinstance(value, str) and needle in fold(value)
            if key_match or value_match:
                hits.append(VariableSearchHit(path=path, value=value))
            if isinstance(value, dict):
                walk(value, path)

    walk(store.scope_variables(coerce_scope(scope)), "")
    return hits


def format_search_results(keyword: str, hits: list[VariableSearchHit]) -> str:
    lines = [f'=== Search results: "{keyword}" ({len(hits)}) ===']
    lines.extend(f"{h.path}: {_display(h.value)}" for h in hits)
    return "\n".join(lines)


def format_change_history(store: VariableStore, limit: int = _DEFAULT_HISTORY_LIMIT) -> str:
    records = store.get_change_history(limit)
    lines = [f"=== Variable change history (last {limit}) ==="]
    if not records:
        lines.append("(no changes recorded)")
    for record in records:
        lines.append(
            f"[{record.timestamp.isoformat()}] {record.operation.value}: "
            f"{record.path} ({record.scope.value})"
        )
        lines.append(f"  {_display(record.old_value)} → {_display(record.new_value)}")
    return "\n".join(lines)


def format_branch_config(config: Optional[BranchVariableConfig] = None) -> str:
    cfg = config or BranchVariableConfig()

    def yes_no(flag: bool) -> str:
        return "yes" if flag else "no"

    return "\n".join([
        "=== Branch variable storage ===",
        f"- Snapshots enabled: {yes_no(cfg.enable_snapshots)}",
        f"- Differential storage: {yes_no(cfg.enable_differential_storage)}",
        f"- Snapshot interval: every {cfg.max_snapshot_interval} nodes",
        f"- Compression threshold: {cfg.compression_threshold} changes",
    ])


# ---------------------------------------------------------------------------
# Directive expansion
# ---------------------------------------------------------------------------


def _history_limit(param: Optional[str]) -> int:
    try:
        limit = int(param) if param else _DEFAULT_HISTORY_LIMIT
    except ValueError:
        return _DEFAULT_HISTORY_LIMIT
    return limit if limit > 0 else _DEFAULT_HISTORY_LIMIT


def expand_debug_directives(
    text: str,
    store: VariableStore,
    manager_config: Optional[BranchVariableConfig] = None,
) -> str:
    """Replace every ``[DEBUG:...]`` directive in *text* with its rendering."""

    def render(match: re.Match[str]) -> str:
        kind = match.group(1).lower()
        param = (match.group(2) or "").strip()
        logger.debug("Expanding debug directive %s (%r)", kind, param)
        if kind == "report":
            return generate_variable_report(store)
        if kind == "json":
            pretty = param.replace(" ", "").lower() != "pretty=false"
            return export_variables_json(store, pretty=pretty)
        if kind == "search":
            return format_search_results(param, search_variables(store, param))
        if kind == "history":
            return format_change_history(store, _history_limit(param))
        return format_branch_config(manager_config)

    return _DIRECTIVE_RE.sub(render, text)
