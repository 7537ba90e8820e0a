"""
core/vulnerabilities.py -- Vulnerability Manager.

Owns the vulnerability lifecycle once a rule has triggered:

  create_vulnerability  -- new record, status open, detected now
  get_mitigation_options -- catalog lookup for the vulnerability's mitigation type
  apply_mitigation      -- record the chosen remediation, move to in_review
  update_status         -- direct status/notes update with regression detection
  get_observations_for  -- the assessment observations a vulnerability was judged on
  evaluate_vulnerability / reevaluate_property -- re-judge against current rules

Status workflow: open -> in_review -> resolved. Backward moves are detected
and reported as regressions; they are only rejected when the manager is built
with enforce_transitions=True.
"""

from __future__ import annotations

import logging
from typing import Optional

from core.errors import NotFoundError, PersistenceError, ValidationError
from core.evaluator import evaluate
from core.gateway import StorageGateway
from core.models import (
    STATUS_ORDER,
    UNRESOLVED_STATUSES,
    ItemFailure,
    MitigationOption,
    Observation,
    ReevaluationResult,
    StatusChange,
    Vulnerability,
    VulnStatus,
    now_iso,
)

logger = logging.getLogger("riskrules.vulnerabilities")


def is_regression(from_status: str, to_status: str) -> bool:
    """Return True if this transition moves backwards in the workflow."""
    from_idx = STATUS_ORDER.get(from_status, -1)
    to_idx = STATUS_ORDER.get(to_status, -1)
    return to_idx < from_idx


class VulnerabilityManager:
    def __init__(self, store: StorageGateway, enforce_transitions: bool = False) -> None:
        self.store = store
        self.enforce_transitions = enforce_transitions

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_vulnerability(self, vulnerability_id: str) -> Vulnerability:
        vuln = self.store.get_vulnerability(vulnerability_id)
        if vuln is None:
            raise NotFoundError("vulnerability", vulnerability_id)
        return vuln

    def list_for_property(self, property_id: int) -> list[Vulnerability]:
        return self.store.list_vulnerabilities_for_property(property_id)

    def find_unresolved(self, rule_id: str, property_id: int) -> Optional[Vulnerability]:
        """Return an open or in_review vulnerability for this rule and property, if any."""
        for vuln in self.store.list_vulnerabilities_for_property(property_id):
            if vuln.rule_id == rule_id and vuln.status in UNRESOLVED_STATUSES:
                return vuln
        return None

    def get_observations_for(self, vulnerability: Vulnerability) -> list[Observation]:
        """Return the observations of the assessment that produced this vulnerability.

        An assessment that no longer exists yields an empty list, which callers
        treat as "cannot re-judge".
        """
        assessment = self.store.get_assessment(vulnerability.assessment_id)
        if assessment is None:
            return []
        return list(assessment.observations)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_vulnerability(
        self,
        rule_id: str,
        assessment_id: str,
        property_id: int,
        mitigation_type_id: Optional[str] = None,
    ) -> Vulnerability:
        """Insert a new open vulnerability detected now."""
        vuln = Vulnerability(
            rule_id=rule_id,
            assessment_id=assessment_id,
            property_id=property_id,
            status=VulnStatus.open.value,
            detected_at=now_iso(),
            mitigation_type_id=mitigation_type_id,
        )
        created = self.store.create_vulnerability(vuln)
        logger.info(
            "Vulnerability %s created (rule=%s assessment=%s property=%s)",
            created.id,
            rule_id,
            assessment_id,
            property_id,
        )
        return created

    def get_mitigation_options(self, vulnerability_id: str) -> list[MitigationOption]:
        """Return the mitigation type configured on the vulnerability with all its values.

        Empty when no mitigation path is configured or the type has since been
        removed from the catalog.
        """
        vuln = self.get_vulnerability(vulnerability_id)
        if not vuln.mitigation_type_id:
            return []
        mitigation_type = self.store.get_mitigation_type(vuln.mitigation_type_id)
        if mitigation_type is None:
            logger.warning(
                "Vulnerability %s references unknown mitigation type %s",
                vulnerability_id,
                vuln.mitigation_type_id,
            )
            return []
        values = self.store.list_mitigation_values(mitigation_type.id)
        return [MitigationOption(type=mitigation_type, values=values)]

    def assign_mitigation_type(self, vulnerability_id: str, mitigation_type_id: str) -> Vulnerability:
        """Attach the mitigation path whose values get_mitigation_options will offer."""
        if self.store.get_mitigation_type(mitigation_type_id) is None:
            raise NotFoundError("mitigation_type", mitigation_type_id)
        updated = self.store.update_vulnerability(
            vulnerability_id,
            {"mitigation_type_id": mitigation_type_id, "updated_at": now_iso()},
        )
        if updated is None:
            raise NotFoundError("vulnerability", vulnerability_id)
        return updated

    def apply_mitigation(self, vulnerability_id: str, mitigation_value_id: str, description: str) -> Vulnerability:
        """Record the chosen mitigation and move the vulnerability to in_review."""
        updated = self.store.update_vulnerability(
            vulnerability_id,
            {
                "status": VulnStatus.in_review.value,
                "mitigation_value_id": mitigation_value_id,
                "mitigation_description": description,
                "updated_at": now_iso(),
            },
        )
        if updated is None:
            raise NotFoundError("vulnerability", vulnerability_id)
        logger.info("Mitigation %s applied to vulnerability %s", mitigation_value_id, vulnerability_id)
        return updated

    def update_status(self, vulnerability_id: str, status: str, notes: Optional[str] = None) -> StatusChange:
        """Set status (and optionally notes) on a vulnerability.

        Raises ValidationError for an unknown status, or for a backward move when
        transitions are enforced. Returns the change with its regression flag.
        """
        status = status.value if isinstance(status, VulnStatus) else str(status)
        if status not in STATUS_ORDER:
            raise ValidationError(
                f"Invalid status {status!r}; expected one of: {', '.join(STATUS_ORDER)}"
            )
        current = self.get_vulnerability(vulnerability_id)
        regression = is_regression(current.status, status)
        if regression:
            if self.enforce_transitions:
                raise ValidationError(f"Status regression not allowed: {current.status} -> {status}")
            logger.warning(
                "Vulnerability %s status regression: %s -> %s",
                vulnerability_id,
                current.status,
                status,
            )

        fields: dict = {"status": status, "updated_at": now_iso()}
        if notes is not None:
            fields["notes"] = notes
        updated = self.store.update_vulnerability(vulnerability_id, fields)
        if updated is None:
            raise NotFoundError("vulnerability", vulnerability_id)
        return StatusChange(vulnerability=updated, from_status=current.status, is_regression=regression)

    # ------------------------------------------------------------------
    # Re-evaluation
    # ------------------------------------------------------------------

    def evaluate_vulnerability(self, vulnerability_id: str) -> bool:
        """Return True if the vulnerability's rule, as it stands now, still triggers.

        False when the rule has been deleted.
        """
        vuln = self.get_vulnerability(vulnerability_id)
        rule = self.store.get_rule(vuln.rule_id)
        if rule is None:
            return False
        return evaluate(rule.functional_rule, self.get_observations_for(vuln))

    def reevaluate_property(self, property_id: int) -> ReevaluationResult:
        """Re-judge every vulnerability of a property and delete those that no longer trigger.

        Vulnerabilities whose rule is gone are reported as orphaned and left in
        place. Per-item storage failures are collected, not raised.
        """
        result = ReevaluationResult(property_id=property_id)
        for vuln in self.store.list_vulnerabilities_for_property(property_id):
            try:
                rule = self.store.get_rule(vuln.rule_id)
                if rule is None:
                    result.orphaned.append(vuln.id)
                    continue
                observations = self.get_observations_for(vuln)
                if not observations:
                    continue
                result.checked += 1
                if not evaluate(rule.functional_rule, observations):
                    if self.store.delete_vulnerability(vuln.id):
                        result.removed += 1
            except PersistenceError as exc:
                logger.error("Re-evaluation of vulnerability %s failed: %s", vuln.id, exc)
                result.errors.append(ItemFailure(item_id=vuln.id, message=str(exc)))

        logger.info(
            "Property %s re-evaluated: %d checked, %d removed, %d orphaned",
            property_id,
            result.checked,
            result.removed,
            len(result.orphaned),
        )
        return result
