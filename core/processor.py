"""
core/processor.py -- Assessment Processor (orchestrator).

Given an assessment's observations, evaluates every applicable rule and
creates one vulnerability per triggered rule:

  process_assessment          -- all active rules
  process_assessment_at_time  -- only rules effective at a timestamp
  get_vulnerability_state_at_time -- historical snapshot for a property

Per-assessment flow: received -> evaluated -> vulnerabilities created.
A storage failure for one rule is logged and reported in the ProcessResult;
the loop carries on with the next rule.

The processor composes the two managers directly. It holds each rule's lock
while judging it so a concurrent rule edit cannot interleave.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Union

from core.errors import NotFoundError, PersistenceError, ValidationError
from core.evaluator import evaluate
from core.gateway import StorageGateway
from core.models import (
    Assessment,
    ItemFailure,
    Observation,
    ProcessResult,
    Rule,
    VulnerabilityState,
    parse_timestamp,
)
from core.rules import RuleManager
from core.vulnerabilities import VulnerabilityManager

logger = logging.getLogger("riskrules.processor")


class AssessmentProcessor:
    def __init__(
        self,
        store: StorageGateway,
        rules: RuleManager,
        vulnerabilities: VulnerabilityManager,
        dedupe_open_vulnerabilities: bool = True,
    ) -> None:
        self.store = store
        self.rules = rules
        self.vulnerabilities = vulnerabilities
        self.dedupe_open_vulnerabilities = dedupe_open_vulnerabilities

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    def record_assessment(
        self,
        property_id: int,
        observations: Iterable[Union[Observation, dict]],
        assessed_at: Optional[str] = None,
    ) -> Assessment:
        """Persist an assessment and its observations so it can be processed and re-judged."""
        obs = [o if isinstance(o, Observation) else Observation.from_dict(o) for o in observations]
        if assessed_at:
            assessed_at = parse_timestamp(assessed_at).isoformat()
        assessment = self.store.create_assessment(
            Assessment(property_id=property_id, observations=obs, assessed_at=assessed_at or "")
        )
        logger.info(
            "Assessment %s recorded for property %s (%d observations)",
            assessment.id,
            property_id,
            len(obs),
        )
        return assessment

    def get_assessment(self, assessment_id: str) -> Assessment:
        assessment = self.store.get_assessment(assessment_id)
        if assessment is None:
            raise NotFoundError("assessment", assessment_id)
        return assessment

    def _resolve(self, assessment: Union[str, Assessment]) -> Assessment:
        if isinstance(assessment, Assessment):
            if assessment.id is None:
                return self.record_assessment(assessment.property_id, assessment.observations, assessment.assessed_at)
            return assessment
        return self.get_assessment(assessment)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_assessment(self, assessment: Union[str, Assessment]) -> ProcessResult:
        """Evaluate every active rule against the assessment and create vulnerabilities."""
        target = self._resolve(assessment)
        return self._run(target, self.store.list_rules(), at=None)

    def process_assessment_at_time(
        self,
        assessment: Union[str, Assessment],
        at: Optional[str] = None,
    ) -> ProcessResult:
        """Like process_assessment, restricted to rules effective at `at`.

        `at` defaults to the assessment's own assessed_at timestamp. A rule is
        effective when effective_from <= at and (effective_to is unset or later
        than at).
        """
        target = self._resolve(assessment)
        when = at or target.assessed_at
        if not when:
            raise ValidationError("An evaluation timestamp is required for point-in-time processing")
        when = parse_timestamp(when).isoformat()
        return self._run(target, self.store.list_rules_effective_at(when), at=when)

    def _run(self, assessment: Assessment, candidates: list[Rule], at: Optional[str]) -> ProcessResult:
        result = ProcessResult(assessment_id=assessment.id)
        for candidate in candidates:
            try:
                with self.rules.locks.hold(candidate.id):
                    # Re-read under the lock: the candidate list may predate an edit.
                    rule = self.store.get_rule(candidate.id)
                    if rule is None or not rule.is_active:
                        continue
                    if at is not None and not rule.is_effective_at(at):
                        continue
                    result.rules_evaluated += 1
                    triggered = evaluate(rule.functional_rule, assessment.observations)
                    logger.debug("Rule %s (%s) evaluated for assessment %s: %s", rule.id, rule.name, assessment.id, triggered)
                    if not triggered:
                        continue
                    result.triggered_rule_ids.append(rule.id)

                    if self.dedupe_open_vulnerabilities:
                        existing = self.vulnerabilities.find_unresolved(rule.id, assessment.property_id)
                        if existing is not None:
                            logger.debug(
                                "Rule %s already has unresolved vulnerability %s on property %s",
                                rule.id,
                                existing.id,
                                assessment.property_id,
                            )
                            result.skipped += 1
                            continue

                    vuln = self.vulnerabilities.create_vulnerability(rule.id, assessment.id, assessment.property_id)
                    result.created.append(vuln)
            except PersistenceError as exc:
                logger.error(
                    "Processing rule %s for assessment %s failed: %s",
                    candidate.id,
                    assessment.id,
                    exc,
                )
                result.errors.append(ItemFailure(item_id=candidate.id, message=str(exc)))

        logger.info(
            "Assessment %s processed: %d rules evaluated, %d triggered, %d created, %d skipped, %d failed",
            assessment.id,
            result.rules_evaluated,
            len(result.triggered_rule_ids),
            len(result.created),
            result.skipped,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_vulnerability_state_at_time(self, property_id: int, timestamp: str) -> VulnerabilityState:
        """Return every vulnerability of the property detected on or before timestamp.

        A historical snapshot of stored records, not a recomputation.
        """
        when = parse_timestamp(timestamp).isoformat()
        vulns = self.store.list_vulnerabilities_for_property(property_id, detected_before=when)
        return VulnerabilityState(property_id=property_id, timestamp=when, vulnerabilities=vulns)
