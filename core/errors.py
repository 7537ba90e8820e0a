"""
core/errors.py -- Error taxonomy for the RiskRules engine.

Three failure classes cross the core boundary:

  ValidationError  -- malformed or referentially invalid input. Raised before
                      any mutation, never partially applied.
  NotFoundError    -- a referenced rule, vulnerability, or assessment does not
                      exist.
  PersistenceError -- the storage gateway failed. Raised by store/ and either
                      propagated (single-item operations) or collected into a
                      batch result (assessment processing, rule reconciliation).

Each error carries a machine-readable code so the API layer can map it onto
its error envelope without string matching.
"""

from __future__ import annotations

from typing import Optional


class RulesEngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RulesEngineError):
    code = "validation_error"

    def __init__(self, message: str, problems: Optional[list[str]] = None) -> None:
        self.problems: list[str] = list(problems or [])
        if self.problems:
            message = f"{message}: {'; '.join(self.problems)}"
        super().__init__(message)


class NotFoundError(RulesEngineError):
    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.code = f"{entity}_not_found"
        super().__init__(f"{entity.replace('_', ' ').capitalize()} {entity_id} not found.")


class PersistenceError(RulesEngineError):
    code = "persistence_error"

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Storage operation '{operation}' failed{detail}")
