"""
store/memory.py -- In-process storage gateway.

Same contract as store/sql.py, kept in dicts. Used by the test suite and by
the CLI's dry-run commands where nothing needs to outlive the process.
Records are copied on the way in and out so callers never share mutable
state with the store.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Any, Iterable, Optional

from core.models import (
    Assessment,
    MitigationType,
    MitigationValue,
    ObservationType,
    ObservationValue,
    Rule,
    Vulnerability,
    now_iso,
    parse_condition_tree,
    parse_timestamp,
)


class MemoryStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rules: dict[str, Rule] = {}
        self._vulns: dict[str, Vulnerability] = {}
        self._assessments: dict[str, Assessment] = {}
        self._observation_types: dict[str, ObservationType] = {}
        self._observation_values: dict[str, ObservationValue] = {}
        self._mitigation_types: dict[str, MitigationType] = {}
        self._mitigation_values: dict[str, MitigationValue] = {}

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def create_rule(self, rule: Rule) -> Rule:
        now = now_iso()
        stored = replace(
            rule,
            id=str(uuid.uuid4()),
            effective_from=rule.effective_from or now,
            version=1,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._rules[stored.id] = stored
        return replace(stored)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            rule = self._rules.get(rule_id)
        return replace(rule) if rule is not None else None

    def list_rules(self) -> list[Rule]:
        with self._lock:
            return [replace(r) for r in self._rules.values()]

    def list_rules_effective_at(self, at: str) -> list[Rule]:
        return [r for r in self.list_rules() if r.is_effective_at(at)]

    def update_rule(self, rule_id: str, fields: dict[str, Any], expected_version: Optional[int] = None) -> Optional[Rule]:
        changes = dict(fields)
        if "functional_rule" in changes:
            changes["functional_rule"] = parse_condition_tree(changes["functional_rule"])
        with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                return None
            if expected_version is not None and current.version != expected_version:
                return None
            updated = replace(current, **changes, version=current.version + 1, updated_at=now_iso())
            self._rules[rule_id] = updated
        return replace(updated)

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    # ------------------------------------------------------------------
    # Vulnerabilities
    # ------------------------------------------------------------------

    def create_vulnerability(self, vuln: Vulnerability) -> Vulnerability:
        now = now_iso()
        stored = replace(
            vuln,
            id=str(uuid.uuid4()),
            detected_at=vuln.detected_at or now,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._vulns[stored.id] = stored
        return replace(stored)

    def get_vulnerability(self, vuln_id: str) -> Optional[Vulnerability]:
        with self._lock:
            vuln = self._vulns.get(vuln_id)
        return replace(vuln) if vuln is not None else None

    def list_vulnerabilities_for_rule(self, rule_id: str) -> list[Vulnerability]:
        with self._lock:
            vulns = [replace(v) for v in self._vulns.values() if v.rule_id == rule_id]
        return sorted(vulns, key=lambda v: parse_timestamp(v.detected_at))

    def list_vulnerabilities_for_property(
        self, property_id: int, detected_before: Optional[str] = None
    ) -> list[Vulnerability]:
        with self._lock:
            vulns = [replace(v) for v in self._vulns.values() if v.property_id == property_id]
        if detected_before is not None:
            cutoff = parse_timestamp(detected_before)
            vulns = [v for v in vulns if parse_timestamp(v.detected_at) <= cutoff]
        return sorted(vulns, key=lambda v: parse_timestamp(v.detected_at))

    def update_vulnerability(self, vuln_id: str, fields: dict[str, Any]) -> Optional[Vulnerability]:
        changes = dict(fields)
        changes.setdefault("updated_at", now_iso())
        with self._lock:
            current = self._vulns.get(vuln_id)
            if current is None:
                return None
            updated = replace(current, **changes)
            self._vulns[vuln_id] = updated
        return replace(updated)

    def delete_vulnerability(self, vuln_id: str) -> bool:
        with self._lock:
            return self._vulns.pop(vuln_id, None) is not None

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    def create_assessment(self, assessment: Assessment) -> Assessment:
        stored = replace(
            assessment,
            id=str(uuid.uuid4()),
            assessed_at=assessment.assessed_at or now_iso(),
            observations=list(assessment.observations),
        )
        with self._lock:
            self._assessments[stored.id] = stored
        return replace(stored, observations=list(stored.observations))

    def get_assessment(self, assessment_id: str) -> Optional[Assessment]:
        with self._lock:
            assessment = self._assessments.get(assessment_id)
        if assessment is None:
            return None
        return replace(assessment, observations=list(assessment.observations))

    # ------------------------------------------------------------------
    # Catalogs
    # ------------------------------------------------------------------

    def create_observation_type(self, obs_type: ObservationType) -> ObservationType:
        stored = replace(obs_type, id=obs_type.id or str(uuid.uuid4()))
        with self._lock:
            self._observation_types[stored.id] = stored
        return replace(stored)

    def list_observation_types(self) -> list[ObservationType]:
        with self._lock:
            return sorted((replace(t) for t in self._observation_types.values()), key=lambda t: t.name)

    def get_observation_types(self, type_ids: Iterable[str]) -> list[ObservationType]:
        with self._lock:
            return [replace(self._observation_types[i]) for i in type_ids if i in self._observation_types]

    def create_observation_value(self, value: ObservationValue) -> ObservationValue:
        stored = replace(value, id=value.id or str(uuid.uuid4()))
        with self._lock:
            self._observation_values[stored.id] = stored
        return replace(stored)

    def get_observation_values(self, value_ids: Iterable[str]) -> list[ObservationValue]:
        with self._lock:
            return [replace(self._observation_values[i]) for i in value_ids if i in self._observation_values]

    def create_mitigation_type(self, mitigation_type: MitigationType) -> MitigationType:
        stored = replace(mitigation_type, id=mitigation_type.id or str(uuid.uuid4()))
        with self._lock:
            self._mitigation_types[stored.id] = stored
        return replace(stored)

    def get_mitigation_type(self, type_id: str) -> Optional[MitigationType]:
        with self._lock:
            found = self._mitigation_types.get(type_id)
        return replace(found) if found is not None else None

    def list_mitigation_types(self) -> list[MitigationType]:
        with self._lock:
            return sorted((replace(t) for t in self._mitigation_types.values()), key=lambda t: t.name)

    def create_mitigation_value(self, value: MitigationValue) -> MitigationValue:
        stored = replace(value, id=value.id or str(uuid.uuid4()))
        with self._lock:
            self._mitigation_values[stored.id] = stored
        return replace(stored)

    def list_mitigation_values(self, mitigation_type_id: str) -> list[MitigationValue]:
        with self._lock:
            values = [replace(v) for v in self._mitigation_values.values() if v.mitigation_type_id == mitigation_type_id]
        return sorted(values, key=lambda v: v.value)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass
