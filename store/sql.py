"""
store/sql.py -- SQLAlchemy-backed storage gateway for the RiskRules engine.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in core/models.py
remain the authoritative domain representation. SQLAlchemy provides a
database-agnostic abstraction: swapping SQLite for PostgreSQL is a connection
string change, not a rewrite.

Pattern: Repository + Data Mapper. SQLStore is the repository (one clean
interface per entity, the core.gateway.StorageGateway contract). The _row_to_*
functions are the mappers (they translate raw DB rows into domain dataclasses).

Every SQLAlchemyError is re-raised as core.errors.PersistenceError so the
managers can collect per-item failures without knowing about SQLAlchemy.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = SQLStore()                               # SQLite default
    store = SQLStore("postgresql://user:pw@host/db") # PostgreSQL
    rule = store.create_rule(rule)
    store.list_vulnerabilities_for_rule(rule.id)
    store.close()
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

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
    now_iso,
    parse_condition_tree,
    parse_timestamp,
    tree_to_dict,
)

logger = logging.getLogger("riskrules.store")

_DEFAULT_DB_URL = "sqlite:///riskrules.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_rules = Table(
    "rules",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False),
    Column("functional_rule", Text, nullable=False),  # JSON condition tree
    Column("effective_from", String(40), nullable=False),
    Column("effective_to", String(40)),
    Column("is_active", Integer, nullable=False, server_default="1"),  # boolean stored as 0/1
    Column("version", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_vulns = Table(
    "vulnerabilities",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("rule_id", String(36), nullable=False, index=True),  # weak reference, no FK
    Column("assessment_id", String(36), nullable=False),
    Column("property_id", Integer, nullable=False, index=True),
    Column("status", String(20), nullable=False, server_default="open"),
    Column("detected_at", String(40), nullable=False),
    Column("mitigation_type_id", String(36)),
    Column("mitigation_value_id", String(36)),
    Column("mitigation_description", Text),
    Column("notes", Text),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_assessments = Table(
    "assessments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("property_id", Integer, nullable=False),
    Column("assessed_at", String(40), nullable=False),
    Column("observations", Text, nullable=False),  # JSON array, owned by the assessment
)

_observation_types = Table(
    "observation_types",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("value_type", String(20), nullable=False, server_default="ENUM"),
    Column("multiple", Integer, nullable=False, server_default="0"),
)

_observation_values = Table(
    "observation_values",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("observation_type_id", String(36), nullable=False, index=True),
    Column("value", String(255), nullable=False),
    Column("description", Text),
)

_mitigation_types = Table(
    "mitigation_types",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("value_type", String(20), nullable=False, server_default="enum"),
    Column("multiple", Integer, nullable=False, server_default="0"),
)

_mitigation_values = Table(
    "mitigation_values",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("mitigation_type_id", String(36), nullable=False, index=True),
    Column("value", String(255), nullable=False),
    Column("description", Text),
    Column("category", String(20), nullable=False, server_default="FULL"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _new_id() -> str:
    return str(uuid.uuid4())


def _text(value: Any) -> Any:
    """Unwrap str-valued enums; DB drivers bind plain str only."""
    return value.value if isinstance(value, Enum) else value


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


@contextmanager
def _guard(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Storage operation %s failed: %s", operation, exc)
        raise PersistenceError(operation, exc) from exc


# Rule fields accepted by update_rule and how they are written.
def _rule_columns(fields: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, val in fields.items():
        if key == "functional_rule":
            values[key] = json.dumps(tree_to_dict(parse_condition_tree(val)))
        elif key == "is_active":
            values[key] = 1 if val else 0
        elif key in ("name", "description", "effective_from", "effective_to"):
            values[key] = val
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SQLStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            # The API runs sync handlers in a thread pool, so the same
            # connection may be used from several threads.
            connect_args["check_same_thread"] = False
            if db_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every thread sees a blank schema.
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with _guard("create_schema"):
            metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def create_rule(self, rule: Rule) -> Rule:
        now = now_iso()
        rule_id = _new_id()
        with _guard("create_rule"), self.engine.connect() as conn:
            conn.execute(
                _rules.insert().values(
                    id=rule_id,
                    name=rule.name,
                    description=rule.description,
                    functional_rule=json.dumps(tree_to_dict(rule.functional_rule)),
                    effective_from=rule.effective_from or now,
                    effective_to=rule.effective_to,
                    is_active=1 if rule.is_active else 0,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return self.get_rule(rule_id)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        with _guard("get_rule"), self.engine.connect() as conn:
            row = conn.execute(_rules.select().where(_rules.c.id == rule_id)).fetchone()
        return _row_to_rule(row) if row is not None else None

    def list_rules(self) -> list[Rule]:
        """Return all rules, oldest first."""
        with _guard("list_rules"), self.engine.connect() as conn:
            rows = conn.execute(_rules.select().order_by(_rules.c.created_at, _rules.c.id)).fetchall()
        return [_row_to_rule(r) for r in rows]

    def list_rules_effective_at(self, at: str) -> list[Rule]:
        """Return rules whose effective window contains `at`.

        Uses Python date arithmetic (not database date functions) for
        portability: stored timestamps may carry different UTC offsets.
        """
        return [rule for rule in self.list_rules() if rule.is_effective_at(at)]

    def update_rule(self, rule_id: str, fields: dict[str, Any], expected_version: Optional[int] = None) -> Optional[Rule]:
        """Write rule fields and bump the version.

        When expected_version is given the write only succeeds if the stored
        version still matches. Returns None when nothing was updated.
        """
        values = _rule_columns(fields)
        stmt = _rules.update().where(_rules.c.id == rule_id)
        if expected_version is not None:
            stmt = stmt.where(_rules.c.version == expected_version)
        with _guard("update_rule"), self.engine.connect() as conn:
            result = conn.execute(stmt.values(**values, version=_rules.c.version + 1, updated_at=now_iso()))
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: str) -> bool:
        with _guard("delete_rule"), self.engine.connect() as conn:
            result = conn.execute(_rules.delete().where(_rules.c.id == rule_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Vulnerabilities
    # ------------------------------------------------------------------

    def create_vulnerability(self, vuln: Vulnerability) -> Vulnerability:
        now = now_iso()
        vuln_id = _new_id()
        with _guard("create_vulnerability"), self.engine.connect() as conn:
            conn.execute(
                _vulns.insert().values(
                    id=vuln_id,
                    rule_id=vuln.rule_id,
                    assessment_id=vuln.assessment_id,
                    property_id=vuln.property_id,
                    status=_text(vuln.status),
                    detected_at=vuln.detected_at or now,
                    mitigation_type_id=vuln.mitigation_type_id,
                    mitigation_value_id=vuln.mitigation_value_id,
                    mitigation_description=vuln.mitigation_description,
                    notes=vuln.notes,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return self.get_vulnerability(vuln_id)

    def get_vulnerability(self, vuln_id: str) -> Optional[Vulnerability]:
        with _guard("get_vulnerability"), self.engine.connect() as conn:
            row = conn.execute(_vulns.select().where(_vulns.c.id == vuln_id)).fetchone()
        return _row_to_vuln(row) if row is not None else None

    def list_vulnerabilities_for_rule(self, rule_id: str) -> list[Vulnerability]:
        with _guard("list_vulnerabilities_for_rule"), self.engine.connect() as conn:
            rows = conn.execute(
                _vulns.select().where(_vulns.c.rule_id == rule_id).order_by(_vulns.c.detected_at, _vulns.c.id)
            ).fetchall()
        return [_row_to_vuln(r) for r in rows]

    def list_vulnerabilities_for_property(
        self, property_id: int, detected_before: Optional[str] = None
    ) -> list[Vulnerability]:
        """Return a property's vulnerabilities, oldest detection first.

        detected_before (inclusive) is compared as parsed datetimes, not strings.
        """
        with _guard("list_vulnerabilities_for_property"), self.engine.connect() as conn:
            rows = conn.execute(
                _vulns.select().where(_vulns.c.property_id == property_id).order_by(_vulns.c.detected_at, _vulns.c.id)
            ).fetchall()
        vulns = [_row_to_vuln(r) for r in rows]
        if detected_before is None:
            return vulns
        cutoff = parse_timestamp(detected_before)
        return [v for v in vulns if parse_timestamp(v.detected_at) <= cutoff]

    def update_vulnerability(self, vuln_id: str, fields: dict[str, Any]) -> Optional[Vulnerability]:
        """Update mutable fields on a vulnerability. Returns None if vuln_id was not found."""
        values = {k: _text(v) for k, v in fields.items()}
        values.setdefault("updated_at", now_iso())
        with _guard("update_vulnerability"), self.engine.connect() as conn:
            result = conn.execute(_vulns.update().where(_vulns.c.id == vuln_id).values(**values))
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_vulnerability(vuln_id)

    def delete_vulnerability(self, vuln_id: str) -> bool:
        with _guard("delete_vulnerability"), self.engine.connect() as conn:
            result = conn.execute(_vulns.delete().where(_vulns.c.id == vuln_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    def create_assessment(self, assessment: Assessment) -> Assessment:
        assessment_id = _new_id()
        with _guard("create_assessment"), self.engine.connect() as conn:
            conn.execute(
                _assessments.insert().values(
                    id=assessment_id,
                    property_id=assessment.property_id,
                    assessed_at=assessment.assessed_at or now_iso(),
                    observations=json.dumps([o.to_dict() for o in assessment.observations]),
                )
            )
            conn.commit()
        return self.get_assessment(assessment_id)

    def get_assessment(self, assessment_id: str) -> Optional[Assessment]:
        with _guard("get_assessment"), self.engine.connect() as conn:
            row = conn.execute(_assessments.select().where(_assessments.c.id == assessment_id)).fetchone()
        return _row_to_assessment(row) if row is not None else None

    # ------------------------------------------------------------------
    # Observation catalog
    # ------------------------------------------------------------------

    def create_observation_type(self, obs_type: ObservationType) -> ObservationType:
        type_id = obs_type.id or _new_id()
        with _guard("create_observation_type"), self.engine.connect() as conn:
            conn.execute(
                _observation_types.insert().values(
                    id=type_id,
                    name=obs_type.name,
                    description=obs_type.description,
                    value_type=_text(obs_type.value_type),
                    multiple=1 if obs_type.multiple else 0,
                )
            )
            conn.commit()
        return ObservationType(
            id=type_id,
            name=obs_type.name,
            description=obs_type.description,
            value_type=_text(obs_type.value_type),
            multiple=obs_type.multiple,
        )

    def list_observation_types(self) -> list[ObservationType]:
        with _guard("list_observation_types"), self.engine.connect() as conn:
            rows = conn.execute(_observation_types.select().order_by(_observation_types.c.name)).fetchall()
        return [_row_to_observation_type(r) for r in rows]

    def get_observation_types(self, type_ids: Iterable[str]) -> list[ObservationType]:
        ids = list(type_ids)
        if not ids:
            return []
        with _guard("get_observation_types"), self.engine.connect() as conn:
            rows = conn.execute(_observation_types.select().where(_observation_types.c.id.in_(ids))).fetchall()
        return [_row_to_observation_type(r) for r in rows]

    def create_observation_value(self, value: ObservationValue) -> ObservationValue:
        value_id = value.id or _new_id()
        with _guard("create_observation_value"), self.engine.connect() as conn:
            conn.execute(
                _observation_values.insert().values(
                    id=value_id,
                    observation_type_id=value.observation_type_id,
                    value=value.value,
                    description=value.description,
                )
            )
            conn.commit()
        return ObservationValue(
            id=value_id,
            observation_type_id=value.observation_type_id,
            value=value.value,
            description=value.description,
        )

    def get_observation_values(self, value_ids: Iterable[str]) -> list[ObservationValue]:
        ids = list(value_ids)
        if not ids:
            return []
        with _guard("get_observation_values"), self.engine.connect() as conn:
            rows = conn.execute(_observation_values.select().where(_observation_values.c.id.in_(ids))).fetchall()
        return [
            ObservationValue(id=r.id, observation_type_id=r.observation_type_id, value=r.value, description=r.description)
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Mitigation catalog
    # ------------------------------------------------------------------

    def create_mitigation_type(self, mitigation_type: MitigationType) -> MitigationType:
        type_id = mitigation_type.id or _new_id()
        with _guard("create_mitigation_type"), self.engine.connect() as conn:
            conn.execute(
                _mitigation_types.insert().values(
                    id=type_id,
                    name=mitigation_type.name,
                    description=mitigation_type.description,
                    value_type=_text(mitigation_type.value_type),
                    multiple=1 if mitigation_type.multiple else 0,
                )
            )
            conn.commit()
        return self.get_mitigation_type(type_id)

    def get_mitigation_type(self, type_id: str) -> Optional[MitigationType]:
        with _guard("get_mitigation_type"), self.engine.connect() as conn:
            row = conn.execute(_mitigation_types.select().where(_mitigation_types.c.id == type_id)).fetchone()
        return _row_to_mitigation_type(row) if row is not None else None

    def list_mitigation_types(self) -> list[MitigationType]:
        with _guard("list_mitigation_types"), self.engine.connect() as conn:
            rows = conn.execute(_mitigation_types.select().order_by(_mitigation_types.c.name)).fetchall()
        return [_row_to_mitigation_type(r) for r in rows]

    def create_mitigation_value(self, value: MitigationValue) -> MitigationValue:
        value_id = value.id or _new_id()
        with _guard("create_mitigation_value"), self.engine.connect() as conn:
            conn.execute(
                _mitigation_values.insert().values(
                    id=value_id,
                    mitigation_type_id=value.mitigation_type_id,
                    value=value.value,
                    description=value.description,
                    category=_text(value.category),
                )
            )
            conn.commit()
        return MitigationValue(
            id=value_id,
            mitigation_type_id=value.mitigation_type_id,
            value=value.value,
            description=value.description,
            category=_text(value.category),
        )

    def list_mitigation_values(self, mitigation_type_id: str) -> list[MitigationValue]:
        with _guard("list_mitigation_values"), self.engine.connect() as conn:
            rows = conn.execute(
                _mitigation_values.select()
                .where(_mitigation_values.c.mitigation_type_id == mitigation_type_id)
                .order_by(_mitigation_values.c.value)
            ).fetchall()
        return [
            MitigationValue(
                id=r.id,
                mitigation_type_id=r.mitigation_type_id,
                value=r.value,
                description=r.description,
                category=r.category,
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_rules.select().limit(1)).fetchall()
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_rule(row) -> Rule:
    return Rule(
        id=row.id,
        name=row.name,
        description=row.description,
        functional_rule=parse_condition_tree(json.loads(row.functional_rule)),
        effective_from=row.effective_from,
        effective_to=row.effective_to,
        is_active=bool(row.is_active),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_vuln(row) -> Vulnerability:
    return Vulnerability(
        id=row.id,
        rule_id=row.rule_id,
        assessment_id=row.assessment_id,
        property_id=row.property_id,
        status=row.status,
        detected_at=row.detected_at,
        mitigation_type_id=row.mitigation_type_id,
        mitigation_value_id=row.mitigation_value_id,
        mitigation_description=row.mitigation_description,
        notes=row.notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_assessment(row) -> Assessment:
    observations = json.loads(row.observations) if row.observations else []
    return Assessment(
        id=row.id,
        property_id=row.property_id,
        assessed_at=row.assessed_at,
        observations=[Observation.from_dict(o) for o in observations],
    )


def _row_to_observation_type(row) -> ObservationType:
    return ObservationType(
        id=row.id,
        name=row.name,
        description=row.description,
        value_type=row.value_type,
        multiple=bool(row.multiple),
    )


def _row_to_mitigation_type(row) -> MitigationType:
    return MitigationType(
        id=row.id,
        name=row.name,
        description=row.description,
        value_type=row.value_type,
        multiple=bool(row.multiple),
    )
