"""
tests/test_sql_store.py -- Unit tests for store/sql.py (SQLStore).

Each test gets its own in-memory SQLite database. Covers:
  - Rule round trip: condition tree survives JSON storage, booleans map back
  - update_rule optimistic version check (match writes, mismatch returns None)
  - Vulnerability listing order and the detected_before cutoff
  - Assessment observations stored with the assessment
  - Catalog lookups filter by id and by owning type
  - SQLAlchemy failures surface as PersistenceError
  - A full engine run on top of SQLStore
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from conftest import coastal_observations, coastal_tree, seed_catalog
from core.config import Settings
from core.engine import build_engine
from core.errors import PersistenceError
from core.models import (
    Assessment,
    MitigationType,
    MitigationValue,
    Observation,
    ObservationType,
    ObservationValue,
    Rule,
    Vulnerability,
    parse_condition_tree,
)
from store.sql import SQLStore


@pytest.fixture
def sql_store():
    s = SQLStore("sqlite:///:memory:")
    yield s
    s.close()


def _rule(**overrides) -> Rule:
    fields = {
        "name": "Coastal",
        "description": "Near the coast",
        "functional_rule": parse_condition_tree(
            {"join_operator": "AND", "conditions": [{"observation_type_id": "t", "operator": "LESS_THAN", "value": 10}]}
        ),
    }
    fields.update(overrides)
    return Rule(**fields)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestRules:
    def test_round_trip(self, sql_store):
        created = sql_store.create_rule(_rule(is_active=False))
        fetched = sql_store.get_rule(created.id)

        assert fetched.name == "Coastal"
        assert fetched.is_active is False
        assert fetched.version == 1
        assert fetched.effective_from
        assert fetched.functional_rule == created.functional_rule
        assert fetched.functional_rule.conditions[0].value == 10

    def test_missing_rule_is_none(self, sql_store):
        assert sql_store.get_rule("missing") is None

    def test_update_bumps_version(self, sql_store):
        created = sql_store.create_rule(_rule())
        updated = sql_store.update_rule(created.id, {"name": "Renamed", "is_active": False})
        assert updated.name == "Renamed"
        assert updated.is_active is False
        assert updated.version == 2

    def test_update_with_matching_version(self, sql_store):
        created = sql_store.create_rule(_rule())
        updated = sql_store.update_rule(created.id, {"name": "v2"}, expected_version=1)
        assert updated.version == 2

    def test_update_with_stale_version_writes_nothing(self, sql_store):
        created = sql_store.create_rule(_rule())
        sql_store.update_rule(created.id, {"name": "v2"})
        assert sql_store.update_rule(created.id, {"name": "stale"}, expected_version=1) is None
        assert sql_store.get_rule(created.id).name == "v2"

    def test_update_missing_rule(self, sql_store):
        assert sql_store.update_rule("missing", {"name": "x"}) is None

    def test_delete(self, sql_store):
        created = sql_store.create_rule(_rule())
        assert sql_store.delete_rule(created.id) is True
        assert sql_store.delete_rule(created.id) is False

    def test_effective_at_filter(self, sql_store):
        now = datetime.now(timezone.utc)
        current = sql_store.create_rule(_rule(effective_from=(now - timedelta(days=1)).isoformat()))
        sql_store.create_rule(_rule(effective_from=(now + timedelta(days=1)).isoformat()))
        assert [r.id for r in sql_store.list_rules_effective_at(now.isoformat())] == [current.id]


# ---------------------------------------------------------------------------
# Vulnerabilities and assessments
# ---------------------------------------------------------------------------


class TestVulnerabilities:
    def test_round_trip_and_update(self, sql_store):
        created = sql_store.create_vulnerability(Vulnerability(rule_id="r", assessment_id="a", property_id=5))
        assert created.status == "open"
        assert created.detected_at

        updated = sql_store.update_vulnerability(created.id, {"status": "in_review", "notes": "checked"})
        assert updated.status == "in_review"
        assert updated.notes == "checked"
        assert sql_store.update_vulnerability("missing", {"notes": "x"}) is None

    def test_detected_before_cutoff(self, sql_store):
        old = sql_store.create_vulnerability(
            Vulnerability(rule_id="r", assessment_id="a", property_id=5, detected_at="2026-01-01T00:00:00+00:00")
        )
        sql_store.create_vulnerability(
            Vulnerability(rule_id="r", assessment_id="a", property_id=5, detected_at="2026-03-01T00:00:00+00:00")
        )
        before = sql_store.list_vulnerabilities_for_property(5, detected_before="2026-02-01T00:00:00Z")
        assert [v.id for v in before] == [old.id]
        assert len(sql_store.list_vulnerabilities_for_property(5)) == 2

    def test_listing_is_scoped(self, sql_store):
        sql_store.create_vulnerability(Vulnerability(rule_id="r1", assessment_id="a", property_id=5))
        sql_store.create_vulnerability(Vulnerability(rule_id="r2", assessment_id="a", property_id=6))
        assert [v.rule_id for v in sql_store.list_vulnerabilities_for_rule("r1")] == ["r1"]
        assert [v.property_id for v in sql_store.list_vulnerabilities_for_property(6)] == [6]

    def test_assessment_keeps_observations(self, sql_store):
        created = sql_store.create_assessment(
            Assessment(
                property_id=3,
                observations=[
                    Observation(observation_type_id="w", observation_value_id="single"),
                    Observation(observation_type_id="d", value=5.2),
                ],
            )
        )
        fetched = sql_store.get_assessment(created.id)
        assert fetched.assessed_at
        assert fetched.observations[0].observation_value_id == "single"
        assert fetched.observations[1].value == 5.2


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TestCatalog:
    def test_observation_lookups(self, sql_store):
        window = sql_store.create_observation_type(ObservationType(name="window_type"))
        roof = sql_store.create_observation_type(ObservationType(name="roof_shape"))
        single = sql_store.create_observation_value(ObservationValue(observation_type_id=window.id, value="single_pane"))

        assert [t.name for t in sql_store.get_observation_types([window.id, "missing"])] == ["window_type"]
        assert {t.id for t in sql_store.list_observation_types()} == {window.id, roof.id}
        values = sql_store.get_observation_values([single.id])
        assert values[0].observation_type_id == window.id

    def test_mitigation_values_by_type(self, sql_store):
        shutters = sql_store.create_mitigation_type(MitigationType(name="Window protection"))
        other = sql_store.create_mitigation_type(MitigationType(name="Roof"))
        sql_store.create_mitigation_value(
            MitigationValue(mitigation_type_id=shutters.id, value="Film", category="BRIDGE")
        )
        sql_store.create_mitigation_value(MitigationValue(mitigation_type_id=other.id, value="Straps"))

        values = sql_store.list_mitigation_values(shutters.id)
        assert [(v.value, v.category) for v in values] == [("Film", "BRIDGE")]
        assert sql_store.get_mitigation_type(shutters.id).name == "Window protection"
        assert sql_store.get_mitigation_type("missing") is None


# ---------------------------------------------------------------------------
# Failures and health
# ---------------------------------------------------------------------------


class TestFailures:
    def test_sqlalchemy_error_becomes_persistence_error(self, sql_store):
        with sql_store.engine.connect() as conn:
            conn.execute(text("DROP TABLE vulnerabilities"))
            conn.commit()
        with pytest.raises(PersistenceError) as exc_info:
            sql_store.create_vulnerability(Vulnerability(rule_id="r", assessment_id="a", property_id=1))
        assert exc_info.value.operation == "create_vulnerability"

    def test_ping(self, sql_store):
        assert sql_store.ping() is True


# ---------------------------------------------------------------------------
# Engine on SQLStore
# ---------------------------------------------------------------------------


class TestEngineOnSQL:
    def test_process_and_reconcile(self, sql_store):
        engine = build_engine(sql_store, Settings())
        cat = seed_catalog(engine)
        rule = engine.rules.create_rule("Coastal", "Coastal", coastal_tree(cat))

        for prop, distance in ((1, 2), (2, 8), (3, 15)):
            assessment = engine.processor.record_assessment(prop, coastal_observations(cat, distance))
            engine.processor.process_assessment(assessment)
        assert len(sql_store.list_vulnerabilities_for_rule(rule.id)) == 2

        result = engine.rules.update_rule(rule.id, {"functional_rule": coastal_tree(cat, max_distance=5)})
        assert result.vulnerabilities_removed == 1
        assert result.rule.version == 2
        assert [v.property_id for v in sql_store.list_vulnerabilities_for_rule(rule.id)] == [1]
