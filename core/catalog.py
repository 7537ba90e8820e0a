"""
core/catalog.py -- Observation and mitigation catalogs.

Thin layer over the gateway's catalog methods: normalizes enum inputs and
checks that a value is created under a type that exists.
"""

from __future__ import annotations

import logging
from typing import Optional

from core.errors import NotFoundError, ValidationError
from core.gateway import StorageGateway
from core.models import (
    MitigationCategory,
    MitigationType,
    MitigationValue,
    ObservationType,
    ObservationValue,
    ValueType,
)

logger = logging.getLogger("riskrules.catalog")


class CatalogManager:
    def __init__(self, store: StorageGateway) -> None:
        self.store = store

    # Observation catalog

    def create_observation_type(
        self,
        name: str,
        value_type: str = ValueType.ENUM.value,
        description: Optional[str] = None,
        multiple: bool = False,
    ) -> ObservationType:
        created = self.store.create_observation_type(
            ObservationType(
                name=name,
                value_type=_member(ValueType, value_type, "value_type"),
                description=description,
                multiple=multiple,
            )
        )
        logger.info("Observation type %s created (%s)", created.id, name)
        return created

    def list_observation_types(self) -> list[ObservationType]:
        return self.store.list_observation_types()

    def create_observation_value(
        self, observation_type_id: str, value: str, description: Optional[str] = None
    ) -> ObservationValue:
        if not self.store.get_observation_types([observation_type_id]):
            raise NotFoundError("observation_type", observation_type_id)
        return self.store.create_observation_value(
            ObservationValue(observation_type_id=observation_type_id, value=value, description=description)
        )

    # Mitigation catalog

    def create_mitigation_type(
        self, name: str, description: Optional[str] = None, multiple: bool = False
    ) -> MitigationType:
        created = self.store.create_mitigation_type(
            MitigationType(name=name, description=description, multiple=multiple)
        )
        logger.info("Mitigation type %s created (%s)", created.id, name)
        return created

    def list_mitigation_types(self) -> list[MitigationType]:
        return self.store.list_mitigation_types()

    def create_mitigation_value(
        self,
        mitigation_type_id: str,
        value: str,
        description: Optional[str] = None,
        category: str = MitigationCategory.FULL.value,
    ) -> MitigationValue:
        if self.store.get_mitigation_type(mitigation_type_id) is None:
            raise NotFoundError("mitigation_type", mitigation_type_id)
        return self.store.create_mitigation_value(
            MitigationValue(
                mitigation_type_id=mitigation_type_id,
                value=value,
                description=description,
                category=_member(MitigationCategory, category, "category"),
            )
        )


def _member(enum_cls, raw, field_name: str) -> str:
    try:
        return enum_cls(str(getattr(raw, "value", raw)).upper()).value
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {allowed}") from None
