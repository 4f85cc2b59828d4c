"""
Tests for branchvars.core.variable_store.VariableStore.

VariableStore is the live variable state every parser pass writes through.
This file covers:

  1.  Path handling — normalization, list indices, invalid paths
  2.  get / has — defaults, stored None, non-container intermediates
  3.  set — intermediate creation, deep copy, add vs set ledger entries
  4.  increment / decrement — non-numeric and bool treated as 0
  5.  delete
  6.  Scopes — isolation, unknown scope fallback
  7.  Legacy mirror — flat dotted view of the global scope
  8.  Snapshots — export deep copy, load replaces and clears the ledger
  9.  Change ledger — truncation 100 → 50, limits, copies
 10.  Store registry — get_or_create_store, clear_store, clear_all_stores
 11.  Update listeners — events carry reasons, failures are contained
 12.  initialize_defaults — deep merge that never overwrites
"""
from __future__ import annotations

import uuid

import pytest

from branchvars.core.paths import MISSING, flatten, normalize_path, resolve
from branchvars.core.variable_store import (
    ChangeOperation,
    Scope,
    VariableStore,
    VariableUpdateEvent,
    clear_all_stores,
    clear_store,
    coerce_scope,
    get_or_create_store,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fresh(**kwargs) -> VariableStore:
    """Return a new VariableStore with a unique conversation ID."""
    return VariableStore(conversation_id=str(uuid.uuid4()), **kwargs)


# ===========================================================================
# 1. Path handling
# ===========================================================================

class TestPaths:
    """Dotted paths normalize to segment lists."""

    def test_simple_path(self):
        assert normalize_path("a.b.c") == ["a", "b", "c"]

    def test_index_suffix_becomes_segment(self):
        assert normalize_path("items[0].name") == ["items", "0", "name"]

    @pytest.mark.parametrize("bad", ["", "   ", "a..b", ".a", "a.", None, 42, ["a"]])
    def test_invalid_paths(self, bad):
        assert normalize_path(bad) is None

    def test_resolve_missing_is_sentinel(self):
        assert resolve({"a": {}}, ["a", "b"]) is MISSING

    def test_resolve_list_index(self):
        assert resolve({"a": [10, 20]}, ["a", "1"]) == 20

    def test_resolve_list_out_of_range(self):
        assert resolve({"a": [10]}, ["a", "3"]) is MISSING

    def test_flatten_nested(self):
        assert flatten({"a": {"b": 1, "c": [1, 2]}, "d": "x"}) == {
            "a.b": 1,
            "a.c": [1, 2],
            "d": "x",
        }


# ===========================================================================
# 2. get / has
# ===========================================================================

class TestGetHas:
    """Reads never raise and fall back to the default."""

    def test_missing_returns_none(self):
        assert _fresh().get("nope") is None

    def test_missing_returns_default(self):
        assert _fresh().get("a.b.c", default=7) == 7

    def test_invalid_path_returns_default(self):
        assert _fresh().get("a..b", default="d") == "d"

    def test_non_container_intermediate_returns_default(self):
        store = _fresh()
        store.set("a", 5)
        assert store.get("a.b", default="x") == "x"

    def test_stored_none_counts_as_present(self):
        store = _fresh()
        store.set("flag", None)
        assert store.has("flag") is True
        assert store.get("flag", default="d") is None

    def test_has_false_for_missing(self):
        assert _fresh().has("missing") is False

    def test_list_index_read(self):
        store = _fresh()
        store.set("items", ["sword", "shield"])
        assert store.get("items[1]") == "shield"
        assert store.get("items.0") == "sword"


# ===========================================================================
# 3. set
# ===========================================================================

class TestSet:
    """Writes create intermediates and record the ledger."""

    def test_creates_intermediate_mappings(self):
        store = _fresh()
        assert store.set("character.stats.hp", 10) is True
        assert store.scope_variables() == {"character": {"stats": {"hp": 10}}}

    def test_replaces_scalar_intermediate(self):
        store = _fresh()
        store.set("a", 1)
        store.set("a.b", 2)
        assert store.get("a") == {"b": 2}

    def test_value_is_deep_copied(self):
        store = _fresh()
        value = {"inner": [1, 2]}
        store.set("x", value)
        value["inner"].append(3)
        assert store.get("x") == {"inner": [1, 2]}

    def test_invalid_path_is_noop(self):
        store = _fresh()
        assert store.set("", 1) is False
        assert store.history_length == 0

    def test_list_index_in_range(self):
        store = _fresh()
        store.set("items", ["a", "b"])
        assert store.set("items[1]", "z") is True
        assert store.get("items") == ["a", "z"]

    def test_list_index_out_of_range_is_noop(self):
        store = _fresh()
        store.set("items", ["a"])
        assert store.set("items[5]", "z") is False
        assert store.get("items") == ["a"]

    def test_first_write_records_add(self):
        store = _fresh()
        store.set("mood", "calm")
        (record,) = store.get_change_history()
        assert record.operation == ChangeOperation.ADD
        assert record.old_value is None
        assert record.new_value == "calm"

    def test_overwrite_records_set(self):
        store = _fresh()
        store.set("mood", "calm")
        store.set("mood", "anxious")
        record = store.get_change_history()[-1]
        assert record.operation == ChangeOperation.SET
        assert record.old_value == "calm"
        assert record.new_value == "anxious"

    def test_record_path_is_normalized(self):
        store = _fresh()
        store.set("items", [1])
        store.set("items[0]", 2)
        assert store.get_change_history()[-1].path == "items.0"


# ===========================================================================
# 4. increment / decrement
# ===========================================================================

class TestIncrementDecrement:
    """Counters treat missing and non-numeric values as 0."""

    def test_increment_missing(self):
        store = _fresh()
        assert store.increment("count") == 1
        assert store.get("count") == 1

    def test_increment_by_delta(self):
        store = _fresh()
        store.set("affinity", 3)
        assert store.increment("affinity", 2) == 5

    def test_increment_non_numeric_treated_as_zero(self):
        store = _fresh()
        store.set("affinity", "high")
        assert store.increment("affinity", 4) == 4

    def test_increment_bool_treated_as_zero(self):
        store = _fresh()
        store.set("flag", True)
        assert store.increment("flag") == 1

    def test_decrement(self):
        store = _fresh()
        store.set("hp", 10)
        assert store.decrement("hp", 3) == 7

    def test_decrement_missing_goes_negative(self):
        assert _fresh().decrement("hp") == -1

    def test_ledger_operations(self):
        store = _fresh()
        store.increment("a")
        store.decrement("a")
        ops = [r.operation for r in store.get_change_history()]
        assert ops == [ChangeOperation.INC, ChangeOperation.DEC]

    def test_invalid_path_returns_none(self):
        assert _fresh().increment("a..b") is None


# ===========================================================================
# 5. delete
# ===========================================================================

class TestDelete:

    def test_delete_existing(self):
        store = _fresh()
        store.set("a.b", 1)
        assert store.delete("a.b") is True
        assert store.get("a") == {}
        assert store.get_change_history()[-1].operation == ChangeOperation.DELETE

    def test_delete_missing_returns_false(self):
        store = _fresh()
        assert store.delete("nothing") is False
        assert store.history_length == 0


# ===========================================================================
# 6. Scopes
# ===========================================================================

class TestScopes:
    """Each scope is an independent tree."""

    def test_scopes_isolated(self):
        store = _fresh()
        store.set("x", 1, scope="local")
        assert store.get("x") is None
        assert store.get("x", scope=Scope.LOCAL) == 1

    def test_unknown_scope_falls_back_to_global(self):
        store = _fresh()
        store.set("x", 1, scope="bogus")
        assert store.get("x") == 1

    def test_coerce_scope_is_case_insensitive(self):
        assert coerce_scope("MESSAGE") is Scope.MESSAGE

    def test_record_carries_scope(self):
        store = _fresh()
        store.set("tmp", 1, scope=Scope.CACHE)
        assert store.get_change_history()[-1].scope is Scope.CACHE


# ===========================================================================
# 7. Legacy mirror
# ===========================================================================

class TestLegacyMirror:
    """Global writes are mirrored into a flat dotted-path view."""

    def test_global_write_mirrored(self):
        store = _fresh()
        store.set("character.affinity", 3)
        assert store.legacy_variables() == {"character.affinity": 3}

    def test_local_write_not_mirrored(self):
        store = _fresh()
        store.set("x", 1, scope="local")
        assert store.legacy_variables() == {}

    def test_overwrite_with_mapping_replaces_leaf(self):
        store = _fresh()
        store.set("a", 1)
        store.set("a.b", 2)
        assert store.legacy_variables() == {"a.b": 2}

    def test_delete_removes_mirror_entry(self):
        store = _fresh()
        store.set("a", 1)
        store.delete("a")
        assert store.legacy_variables() == {}

    def test_mirror_rebuilt_on_load(self):
        store = _fresh()
        store.load_snapshot({"global": {"a": {"b": 1}}})
        assert store.legacy_variables() == {"a.b": 1}

    def test_mirror_is_a_copy(self):
        store = _fresh()
        store.set("items", [1])
        store.legacy_variables()["items"].append(2)
        assert store.get("items") == [1]


# ===========================================================================
# 8. Snapshots
# ===========================================================================

class TestSnapshots:
    """export_snapshot / load_snapshot."""

    def test_export_has_all_scopes(self):
        snapshot = _fresh().export_snapshot()
        assert set(snapshot) == {"global", "local", "message", "cache"}

    def test_export_is_deep_copy(self):
        store = _fresh()
        store.set("a.b", [1])
        snapshot = store.export_snapshot()
        snapshot["global"]["a"]["b"].append(2)
        assert store.get("a.b") == [1]

    def test_load_replaces_everything(self):
        store = _fresh()
        store.set("old", 1)
        store.set("tmp", 1, scope="local")
        store.load_snapshot({"global": {"new": 2}})
        assert store.export_snapshot() == {
            "global": {"new": 2},
            "local": {},
            "message": {},
            "cache": {},
        }

    def test_load_clears_ledger(self):
        store = _fresh()
        store.set("a", 1)
        store.load_snapshot({})
        assert store.get_change_history() == []

    def test_load_ignores_non_mapping_scope(self):
        store = _fresh()
        store.load_snapshot({"global": {"a": 1}, "local": ["not", "a", "mapping"]})
        assert store.scope_variables("local") == {}
        assert store.get("a") == 1

    def test_load_does_not_alias_input(self):
        store = _fresh()
        state = {"global": {"a": {"b": 1}}}
        store.load_snapshot(state)
        state["global"]["a"]["b"] = 99
        assert store.get("a.b") == 1

    def test_round_trip(self):
        store = _fresh()
        store.set("a", {"b": [1, {"c": None}]})
        store.set("x", "y", scope="message")
        other = _fresh()
        other.load_snapshot(store.export_snapshot())
        assert other.export_snapshot() == store.export_snapshot()


# ===========================================================================
# 9. Change ledger
# ===========================================================================

class TestChangeLedger:
    """Bounded history of mutations."""

    def test_truncates_to_retain_after_limit(self):
        store = _fresh(history_limit=100, history_retain=50)
        for i in range(100):
            store.set("counter", i)
        assert store.history_length == 100
        store.set("counter", 100)
        assert store.history_length == 50
        assert store.get_change_history()[-1].new_value == 100

    def test_default_limits_from_settings(self):
        store = _fresh()
        assert store.history_limit == 100
        assert store.history_retain == 50

    def test_retain_clamped_to_limit(self):
        store = _fresh(history_limit=10, history_retain=20)
        assert store.history_retain == 10

    def test_get_change_history_limit(self):
        store = _fresh()
        for i in range(5):
            store.set("n", i)
        recent = store.get_change_history(2)
        assert [r.new_value for r in recent] == [3, 4]

    def test_get_change_history_returns_copies(self):
        store = _fresh()
        store.set("a", [1])
        store.get_change_history()[0].new_value.append(2)
        assert store.get_change_history()[0].new_value == [1]

    def test_clear_history(self):
        store = _fresh()
        store.set("a", 1)
        store.clear_history()
        assert store.history_length == 0
        assert store.get("a") == 1

    def test_record_to_dict_shape(self):
        store = _fresh()
        store.set("a", 1)
        record = store.get_change_history()[0].to_dict()
        assert set(record) == {
            "timestamp", "path", "oldValue", "newValue", "operation", "scope", "reason",
        }
        assert record["operation"] == "add"
        assert record["scope"] == "global"

    def test_to_dict_summary(self):
        store = VariableStore(conversation_id="conv-abc")
        store.set("a", 1)
        summary = store.to_dict()
        assert summary["conversation_id"] == "conv-abc"
        assert summary["history_length"] == 1
        assert summary["scopes"]["global"] == {"a": 1}


# ===========================================================================
# 10. Store registry
# ===========================================================================

class TestStoreRegistry:
    """One store per conversation."""

    def test_same_conversation_same_store(self):
        assert get_or_create_store("c1") is get_or_create_store("c1")

    def test_conversations_isolated(self):
        get_or_create_store("c1").set("mood", "calm")
        assert get_or_create_store("c2").get("mood") is None

    def test_clear_store(self):
        first = get_or_create_store("c1")
        clear_store("c1")
        assert get_or_create_store("c1") is not first

    def test_clear_missing_store_is_noop(self):
        clear_store("never-created")

    def test_clear_all_stores(self):
        first = get_or_create_store("c1")
        clear_all_stores()
        assert get_or_create_store("c1") is not first


# ===========================================================================
# 11. Update listeners
# ===========================================================================

class TestUpdateListeners:
    """Every applied write is delivered to listeners."""

    def test_event_per_write(self):
        store = _fresh()
        events: list[VariableUpdateEvent] = []
        store.add_update_listener(events.append)

        store.set("affinity", 3, reason="met at the gate")
        store.increment("affinity", 2, reason="gift")
        store.delete("affinity")

        assert [(e.path, e.operation) for e in events] == [
            ("affinity", ChangeOperation.ADD),
            ("affinity", ChangeOperation.INC),
            ("affinity", ChangeOperation.DELETE),
        ]
        assert [e.reason for e in events] == ["met at the gate", "gift", None]
        assert (events[1].old_value, events[1].new_value) == (3, 5)

    def test_reason_kept_on_ledger(self):
        store = _fresh()
        store.decrement("hp", 2, reason="trap")
        record = store.get_change_history()[0]
        assert record.reason == "trap"
        assert record.to_dict()["reason"] == "trap"

    def test_event_to_dict(self):
        store = _fresh()
        events: list[VariableUpdateEvent] = []
        store.add_update_listener(events.append)
        store.set("mood", "calm", scope="local", reason="rest")
        payload = events[0].to_dict()
        assert payload["path"] == "mood"
        assert payload["newValue"] == "calm"
        assert payload["scope"] == "local"
        assert payload["reason"] == "rest"
        assert payload["timestamp"]

    def test_rejected_write_emits_nothing(self):
        store = _fresh()
        events: list[VariableUpdateEvent] = []
        store.add_update_listener(events.append)
        store.set("a..b", 1)
        store.delete("missing")
        assert events == []

    def test_failing_listener_is_contained(self, caplog):
        store = _fresh()
        events: list[VariableUpdateEvent] = []

        def explode(event: VariableUpdateEvent) -> None:
            raise RuntimeError("listener bug")

        store.add_update_listener(explode)
        store.add_update_listener(events.append)
        assert store.set("a", 1) is True
        assert store.get("a") == 1
        assert len(events) == 1
        assert any("listener failed" in r.getMessage() for r in caplog.records)

    def test_remove_listener(self):
        store = _fresh()
        events: list[VariableUpdateEvent] = []
        store.add_update_listener(events.append)
        store.remove_update_listener(events.append)
        store.set("a", 1)
        assert events == []

    def test_remove_unknown_listener_is_noop(self):
        _fresh().remove_update_listener(print)

    def test_event_values_are_copies(self):
        store = _fresh()
        events: list[VariableUpdateEvent] = []
        store.add_update_listener(events.append)
        store.set("inv", ["sword"])
        events[0].new_value.append("shield")
        assert store.get("inv") == ["sword"]


# ===========================================================================
# 12. initialize_defaults
# ===========================================================================

class TestInitializeDefaults:
    """Deep-merge defaults without overwriting existing values."""

    def test_fills_only_missing_keys(self):
        store = _fresh()
        store.set("player.name", "Aria")
        added = store.initialize_defaults({"player": {"name": "Nobody", "level": 1}, "gold": 0})
        assert added == ["player.level", "gold"]
        assert store.scope_variables() == {"player": {"name": "Aria", "level": 1}, "gold": 0}

    def test_existing_scalar_keeps_subtree(self):
        store = _fresh()
        store.set("stats", 5)
        assert store.initialize_defaults({"stats": {"hp": 10}}) == []
        assert store.get("stats") == 5

    def test_falsy_existing_values_kept(self):
        store = _fresh()
        store.set("gold", 0)
        store.set("flag", False)
        store.initialize_defaults({"gold": 100, "flag": True})
        assert store.get("gold") == 0
        assert store.get("flag") is False

    def test_ledger_legacy_and_events(self):
        store = _fresh()
        events: list[VariableUpdateEvent] = []
        store.add_update_listener(events.append)
        store.initialize_defaults({"world": {"day": 1}})
        assert store.legacy_variables() == {"world.day": 1}
        record = store.get_change_history()[0]
        assert (record.path, record.operation, record.reason) == ("world", ChangeOperation.ADD, "defaults")
        assert [e.path for e in events] == ["world"]

    def test_defaults_are_copied(self):
        store = _fresh()
        defaults = {"inv": ["sword"]}
        store.initialize_defaults(defaults)
        defaults["inv"].append("shield")
        assert store.get("inv") == ["sword"]

    def test_other_scope(self):
        store = _fresh()
        store.initialize_defaults({"tmp": 1}, scope="cache")
        assert store.get("tmp", scope="cache") == 1
        assert store.get("tmp") is None

    def test_nothing_to_add(self):
        store = _fresh()
        store.set("a", 1)
        assert store.initialize_defaults({"a": 2}) == []
        assert store.history_length == 1
