"""
core/engine.py -- Wires the managers around one storage gateway.

Entry points (api/main.py, main.py) build an Engine once and call the
managers directly: engine.rules.update_rule(...), engine.processor.process_assessment(...).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.catalog import CatalogManager
from core.config import Settings, get_settings
from core.gateway import StorageGateway
from core.locks import RuleLocks
from core.processor import AssessmentProcessor
from core.rules import RuleManager
from core.vulnerabilities import VulnerabilityManager


@dataclass
class Engine:
    store: StorageGateway
    rules: RuleManager
    vulnerabilities: VulnerabilityManager
    processor: AssessmentProcessor
    catalog: CatalogManager


def build_engine(store: StorageGateway, settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    vulnerabilities = VulnerabilityManager(store, enforce_transitions=settings.enforce_status_transitions)
    rules = RuleManager(store, vulnerabilities, locks=RuleLocks())
    processor = AssessmentProcessor(
        store,
        rules,
        vulnerabilities,
        dedupe_open_vulnerabilities=settings.dedupe_open_vulnerabilities,
    )
    return Engine(
        store=store,
        rules=rules,
        vulnerabilities=vulnerabilities,
        processor=processor,
        catalog=CatalogManager(store),
    )
