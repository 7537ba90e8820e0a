"""
tests/test_cli.py -- Tests for the command-line front end in main.py.

Covers:
  - test-rule: text and --json output, nothing persisted
  - process / render / reevaluate against a file-backed SQLite database
  - Engine errors exit with status 2 and a message on stderr
  - Unreadable input files exit with a readable message
"""

from __future__ import annotations

import json

import pytest

from conftest import coastal_observations, coastal_tree, seed_catalog
from core.config import Settings
from core.engine import build_engine
from main import main
from store.sql import SQLStore


def _write(tmp_path, name, document) -> str:
    path = tmp_path / name
    path.write_text(json.dumps(document))
    return str(path)


# ---------------------------------------------------------------------------
# test-rule
# ---------------------------------------------------------------------------


class TestTestRule:
    TREE = {
        "join_operator": "AND",
        "conditions": [{"observation_type_id": "distance", "operator": "LESS_THAN", "value": 10}],
    }

    def test_text_output(self, tmp_path, capsys):
        rule = _write(tmp_path, "rule.json", self.TREE)
        near = _write(tmp_path, "near.json", [{"observation_type_id": "distance", "value": 5.2}])
        far = _write(tmp_path, "far.json", {"observations": [{"observation_type_id": "distance", "value": 15}]})

        assert main(["test-rule", rule, near, far]) == 0
        out = capsys.readouterr().out
        assert f"TRIGGERED  {near}" in out
        assert f"clear      {far}" in out

    def test_json_output_accepts_rule_object(self, tmp_path, capsys):
        rule = _write(tmp_path, "rule.json", {"name": "Coastal", "functional_rule": self.TREE})
        near = _write(tmp_path, "near.json", [{"observation_type_id": "distance", "value": 1}])

        assert main(["test-rule", rule, near, "--json"]) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload[0]["triggered"] is True
        assert payload[0]["observations"] == [{"observation_type_id": "distance", "value": 1}]

    def test_malformed_tree_exits_2(self, tmp_path, capsys):
        rule = _write(tmp_path, "rule.json", {"join_operator": "MAYBE", "conditions": []})
        case = _write(tmp_path, "case.json", [])
        assert main(["test-rule", rule, case]) == 2
        assert "join_operator" in capsys.readouterr().err

    def test_missing_file(self, tmp_path):
        with pytest.raises(SystemExit, match="not a readable file"):
            main(["test-rule", str(tmp_path / "absent.json"), str(tmp_path / "absent.json")])

    def test_invalid_json(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        with pytest.raises(SystemExit, match="not valid JSON"):
            main(["test-rule", str(bad), str(bad)])


# ---------------------------------------------------------------------------
# Database-backed commands
# ---------------------------------------------------------------------------


@pytest.fixture
def seeded_db(tmp_path):
    """A SQLite file holding the coastal catalog and rule."""
    url = f"sqlite:///{tmp_path / 'riskrules.db'}"
    store = SQLStore(url)
    engine = build_engine(store, Settings())
    cat = seed_catalog(engine)
    rule = engine.rules.create_rule("Coastal single pane", "Single pane windows close to the coast", coastal_tree(cat))
    store.close()
    return url, cat, rule


class TestDatabaseCommands:
    def test_render(self, seeded_db, capsys):
        url, _, rule = seeded_db
        assert main(["--db", url, "render", rule.id]) == 0
        out = capsys.readouterr().out
        assert out.startswith("Rule: Coastal single pane\n")
        assert "distance_to_coast is less than 10" in out

    def test_render_unknown_rule(self, seeded_db, capsys):
        url, _, _ = seeded_db
        assert main(["--db", url, "render", "missing"]) == 2
        assert "missing" in capsys.readouterr().err

    def test_process_and_reevaluate(self, seeded_db, tmp_path, capsys):
        url, cat, rule = seeded_db
        obs = _write(tmp_path, "obs.json", coastal_observations(cat, 5.2))

        assert main(["--db", url, "process", obs, "--property", "42", "--json"]) == 0
        result = json.loads(capsys.readouterr().out)
        assert result["triggered_rule_ids"] == [rule.id]
        assert len(result["created"]) == 1

        assert main(["--db", url, "reevaluate", "42", "--json"]) == 0
        reevaluated = json.loads(capsys.readouterr().out)
        assert reevaluated["checked"] == 1
        assert reevaluated["removed"] == 0

    def test_process_at_before_rule_starts(self, seeded_db, tmp_path, capsys):
        url, cat, _ = seeded_db
        obs = _write(tmp_path, "obs.json", coastal_observations(cat, 5.2))
        assert main(["--db", url, "process", obs, "--property", "7", "--at", "2000-01-01T00:00:00Z"]) == 0
        assert "Rules evaluated:  0" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "usage" in capsys.readouterr().out.lower()
