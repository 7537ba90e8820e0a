"""
core/gateway.py -- The storage gateway contract the engine depends on.

The managers never construct a store themselves: a StorageGateway is injected
at construction. store/sql.py implements it against SQLAlchemy; store/memory.py
implements it in memory for tests and dry runs.

Contract notes shared by every implementation:
  - get_* returns None when the record does not exist.
  - update_* / delete_* return False when the record does not exist.
  - create_* assigns id and timestamps and returns the stored record.
  - Any backend failure surfaces as core.errors.PersistenceError.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Protocol

from core.models import (
    Assessment,
    MitigationType,
    MitigationValue,
    ObservationType,
    ObservationValue,
    Rule,
    Vulnerability,
)


class StorageGateway(Protocol):
    # Rules
    def create_rule(self, rule: Rule) -> Rule: ...

    def get_rule(self, rule_id: str) -> Optional[Rule]: ...

    def list_rules(self) -> list[Rule]: ...

    def list_rules_effective_at(self, at: str) -> list[Rule]: ...

    def update_rule(self, rule_id: str, fields: dict[str, Any], expected_version: Optional[int] = None) -> Optional[Rule]: ...

    def delete_rule(self, rule_id: str) -> bool: ...

    # Vulnerabilities
    def create_vulnerability(self, vuln: Vulnerability) -> Vulnerability: ...

    def get_vulnerability(self, vuln_id: str) -> Optional[Vulnerability]: ...

    def list_vulnerabilities_for_rule(self, rule_id: str) -> list[Vulnerability]: ...

    def list_vulnerabilities_for_property(self, property_id: int, detected_before: Optional[str] = None) -> list[Vulnerability]: ...

    def update_vulnerability(self, vuln_id: str, fields: dict[str, Any]) -> Optional[Vulnerability]: ...

    def delete_vulnerability(self, vuln_id: str) -> bool: ...

    # Assessments
    def create_assessment(self, assessment: Assessment) -> Assessment: ...

    def get_assessment(self, assessment_id: str) -> Optional[Assessment]: ...

    # Observation catalog
    def create_observation_type(self, obs_type: ObservationType) -> ObservationType: ...

    def list_observation_types(self) -> list[ObservationType]: ...

    def get_observation_types(self, type_ids: Iterable[str]) -> list[ObservationType]: ...

    def create_observation_value(self, value: ObservationValue) -> ObservationValue: ...

    def get_observation_values(self, value_ids: Iterable[str]) -> list[ObservationValue]: ...

    # Mitigation catalog
    def create_mitigation_type(self, mitigation_type: MitigationType) -> MitigationType: ...

    def get_mitigation_type(self, type_id: str) -> Optional[MitigationType]: ...

    def list_mitigation_types(self) -> list[MitigationType]: ...

    def create_mitigation_value(self, value: MitigationValue) -> MitigationValue: ...

    def list_mitigation_values(self, mitigation_type_id: str) -> list[MitigationValue]: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...
