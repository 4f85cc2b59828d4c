"""
Tests for the branchvars CLI.

Covers:
  1.  apply    — cleaned text, --json payload, --write round trip, --defaults,
               argument errors
  2.  restore  — resolved state, unknown node, missing/invalid tree files
  3.  validate — intact (exit 0) vs broken (exit 1) chains
  4.  repair   — success vs no snapshot
  5.  stats    — counts along a path
  6.  inspect  — report, JSON export, search
"""
from __future__ import annotations

import json

from typer.testing import CliRunner

from branchvars.cli.app import cli
from branchvars.cli.errors import ExitCode

runner = CliRunner()

GOOD_TREE = [
    {"nodeId": "root", "variableSnapshot": {"global": {"hp": 5, "mood": "calm"}}},
    {
        "nodeId": "n1",
        "parentNodeId": "root",
        "variableChanges": [{"path": "hp", "operation": "inc", "newValue": 2}],
    },
    {
        "nodeId": "n2",
        "parentNodeId": "n1",
        "variableChanges": [{"path": "mood", "operation": "set", "newValue": "angry"}],
    },
]

BROKEN_TREE = {
    "nodes": [
        {"nodeId": "r", "variableChanges": []},
        {"nodeId": "s", "parentNodeId": "r", "variableSnapshot": {"global": {"hp": 1}}},
        {
            "nodeId": "d",
            "parentNodeId": "s",
            "variableChanges": [{"path": "hp", "operation": "dec", "newValue": 1}],
        },
    ]
}

NO_SNAPSHOT_TREE = [
    {"nodeId": "r", "variableChanges": [{"path": "hp", "operation": "set", "newValue": 1}]},
]


# ===========================================================================
# 1. apply
# ===========================================================================

class TestApply:

    def test_prints_cleaned_text(self, tmp_path):
        text = tmp_path / "out.txt"
        text.write_text("She smiles. @mood=happy@", encoding="utf-8")
        result = runner.invoke(cli, ["apply", str(text)])
        assert result.exit_code == 0
        assert result.stdout.strip() == "She smiles."

    def test_json_payload(self, tmp_path, write_json):
        state = write_json("state.json", {"global": {"affinity": 4}})
        text = tmp_path / "out.txt"
        text.write_text("set('affinity', 3, 5, 'gift')", encoding="utf-8")

        result = runner.invoke(cli, ["apply", str(text), "--state", str(state), "--json"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["text"] == ""
        assert payload["commands"][0]["path"] == "affinity"
        assert payload["commands"][0]["newValue"] == 5
        assert len(payload["warnings"]) == 1
        assert payload["state"]["global"] == {"affinity": 5}

    def test_state_file_untouched_without_write(self, tmp_path, write_json):
        state = write_json("state.json", {"global": {"gold": 1}})
        text = tmp_path / "out.txt"
        text.write_text("@gold=9@", encoding="utf-8")
        runner.invoke(cli, ["apply", str(text), "--state", str(state)])
        assert json.loads(state.read_text())["global"] == {"gold": 1}

    def test_write_saves_state(self, tmp_path, write_json):
        state = write_json("state.json", {"global": {"gold": 1}})
        text = tmp_path / "out.txt"
        text.write_text("@gold=9@", encoding="utf-8")
        result = runner.invoke(cli, ["apply", str(text), "-s", str(state), "-w"])
        assert result.exit_code == 0
        assert json.loads(state.read_text())["global"] == {"gold": 9}

    def test_defaults_fill_missing_keys(self, tmp_path, write_json):
        state = write_json("state.json", {"global": {"gold": 1}})
        defaults = write_json("defaults.json", {"gold": 50, "player": {"level": 1}})
        text = tmp_path / "out.txt"
        text.write_text("@mood=calm@", encoding="utf-8")
        result = runner.invoke(
            cli, ["apply", str(text), "-s", str(state), "--defaults", str(defaults), "--json"]
        )
        assert result.exit_code == 0
        assert json.loads(result.stdout)["state"]["global"] == {
            "gold": 1, "player": {"level": 1}, "mood": "calm",
        }

    def test_write_without_state_is_user_error(self, tmp_path):
        text = tmp_path / "out.txt"
        text.write_text("hi", encoding="utf-8")
        result = runner.invoke(cli, ["apply", str(text), "--write"])
        assert result.exit_code == ExitCode.USER_ERROR

    def test_missing_text_file(self, tmp_path):
        result = runner.invoke(cli, ["apply", str(tmp_path / "nope.txt")])
        assert result.exit_code == ExitCode.INVALID_INPUT
        assert "File not found" in result.output

    def test_invalid_state_file(self, tmp_path):
        text = tmp_path / "out.txt"
        text.write_text("hi", encoding="utf-8")
        state = tmp_path / "state.json"
        state.write_text("[1, 2]", encoding="utf-8")
        result = runner.invoke(cli, ["apply", str(text), "--state", str(state)])
        assert result.exit_code == ExitCode.INVALID_INPUT


# ===========================================================================
# 2. restore
# ===========================================================================

class TestRestore:

    def test_json_state(self, write_json):
        tree = write_json("tree.json", GOOD_TREE)
        result = runner.invoke(cli, ["restore", str(tree), "n2", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["global"] == {"hp": 7, "mood": "angry"}

    def test_human_header(self, write_json):
        tree = write_json("tree.json", GOOD_TREE)
        result = runner.invoke(cli, ["restore", str(tree), "n1"])
        assert result.exit_code == 0
        assert "State at node 'n1' (2 node(s) replayed)" in result.stdout

    def test_unknown_node(self, write_json):
        tree = write_json("tree.json", GOOD_TREE)
        result = runner.invoke(cli, ["restore", str(tree), "ghost"])
        assert result.exit_code == ExitCode.USER_ERROR
        assert "not found" in result.output

    def test_missing_tree_file(self, tmp_path):
        result = runner.invoke(cli, ["restore", str(tmp_path / "nope.json"), "n1"])
        assert result.exit_code == ExitCode.INVALID_INPUT

    def test_invalid_json(self, tmp_path):
        bad = tmp_path / "tree.json"
        bad.write_text("{not json", encoding="utf-8")
        result = runner.invoke(cli, ["restore", str(bad), "n1"])
        assert result.exit_code == ExitCode.INVALID_INPUT
        assert "Invalid JSON" in result.output

    def test_invalid_node_record(self, write_json):
        tree = write_json("tree.json", [{"nodeId": "a", "variableChanges": [{"path": "x", "operation": "boom"}]}])
        result = runner.invoke(cli, ["restore", str(tree), "a"])
        assert result.exit_code == ExitCode.INVALID_INPUT


# ===========================================================================
# 3. validate
# ===========================================================================

class TestValidate:

    def test_intact_chain(self, write_json):
        tree = write_json("tree.json", GOOD_TREE)
        result = runner.invoke(cli, ["validate", str(tree), "n2"])
        assert result.exit_code == 0
        assert "intact" in result.stdout

    def test_broken_chain(self, write_json):
        tree = write_json("tree.json", BROKEN_TREE)
        result = runner.invoke(cli, ["validate", str(tree), "d"])
        assert result.exit_code == ExitCode.USER_ERROR
        assert "broken" in result.stdout
        assert "r" in result.stdout

    def test_json(self, write_json):
        tree = write_json("tree.json", BROKEN_TREE)
        result = runner.invoke(cli, ["validate", str(tree), "d", "--json"])
        assert json.loads(result.stdout) == {
            "isValid": False,
            "missingSnapshots": ["r"],
            "brokenChain": True,
        }


# ===========================================================================
# 4. repair
# ===========================================================================

class TestRepair:

    def test_repairs_from_last_snapshot(self, write_json):
        tree = write_json("tree.json", BROKEN_TREE)
        result = runner.invoke(cli, ["repair", str(tree), "d", "--json"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["success"] is True
        assert payload["snapshotNodeId"] == "s"
        assert payload["nodesReplayed"] == 1
        assert payload["state"]["global"] == {"hp": 0}

    def test_no_snapshot(self, write_json):
        tree = write_json("tree.json", NO_SNAPSHOT_TREE)
        result = runner.invoke(cli, ["repair", str(tree), "r"])
        assert result.exit_code == ExitCode.USER_ERROR
        assert "Cannot repair" in result.stdout


# ===========================================================================
# 5. stats
# ===========================================================================

class TestStats:

    def test_json(self, write_json):
        tree = write_json("tree.json", GOOD_TREE)
        result = runner.invoke(cli, ["stats", str(tree), "n2", "--json"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["totalNodes"] == 3
        assert payload["snapshotCount"] == 1
        assert payload["diffCount"] == 2
        assert abs(payload["compressionRatio"] - 2 / 3) < 1e-9

    def test_human(self, write_json):
        tree = write_json("tree.json", GOOD_TREE)
        result = runner.invoke(cli, ["stats", str(tree), "n1"])
        assert "snapshots:          1" in result.stdout
        assert "compression ratio:  0.50" in result.stdout


# ===========================================================================
# 6. inspect
# ===========================================================================

class TestInspect:

    STATE = {"global": {"character": {"name": "Aria"}, "gold": 3}, "local": {"tmp": 1}}

    def test_report(self, write_json):
        state = write_json("state.json", self.STATE)
        result = runner.invoke(cli, ["inspect", str(state)])
        assert result.exit_code == 0
        assert "Global variables: 2" in result.stdout
        assert "name: Aria" in result.stdout

    def test_json(self, write_json):
        state = write_json("state.json", self.STATE)
        result = runner.invoke(cli, ["inspect", str(state), "--json"])
        payload = json.loads(result.stdout)
        assert payload["legacyVariables"] == {"character.name": "Aria", "gold": 3}
        assert payload["scopedVariables"]["local"] == {"tmp": 1}

    def test_search(self, write_json):
        state = write_json("state.json", self.STATE)
        result = runner.invoke(cli, ["inspect", str(state), "-k", "aria", "--json"])
        assert json.loads(result.stdout) == [{"path": "character.name", "value": "Aria"}]

    def test_search_case_sensitive(self, write_json):
        state = write_json("state.json", self.STATE)
        result = runner.invoke(
            cli, ["inspect", str(state), "--search", "aria", "--case-sensitive", "--json"]
        )
        assert json.loads(result.stdout) == []

    def test_missing_state_file(self, tmp_path):
        result = runner.invoke(cli, ["inspect", str(tmp_path / "nope.json")])
        assert result.exit_code == ExitCode.INVALID_INPUT
