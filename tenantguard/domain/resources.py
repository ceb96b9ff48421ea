from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import inspect

from tenantguard.domain.models import Base, Customer, TenantScopedMixin, WorkOrder


# Columns callers may never set directly through the gate.
SYSTEM_FIELDS = frozenset({"id", "tenant_id", "created_at", "updated_at"})


@dataclass(frozen=True)
class ResourceType:
    name: str
    model: type[Base]
    # Fields stripped from audit snapshots for this resource type.
    redact_fields: frozenset[str] = field(default_factory=frozenset)

    @property
    def table_name(self) -> str:
        return self.model.__tablename__

    def column_names(self) -> set[str]:
        return {attr.key for attr in inspect(self.model).column_attrs}

    def writable_fields(self) -> set[str]:
        return self.column_names() - SYSTEM_FIELDS


_CATALOG: dict[str, ResourceType] = {}


def register_resource(
    name: str,
    model: type[Base],
    *,
    redact_fields: frozenset[str] | set[str] = frozenset(),
) -> ResourceType:
    # Only tenant-scoped models can be exposed as protected resources.
    if not issubclass(model, TenantScopedMixin):
        raise TypeError(f"{model.__name__} is not tenant scoped")
    resource = ResourceType(name=name, model=model, redact_fields=frozenset(redact_fields))
    _CATALOG[name] = resource
    return resource


def get_resource(name: str) -> ResourceType | None:
    return _CATALOG.get(name)


def snapshot(row: Base) -> dict[str, Any]:
    # Serialize mapped columns into JSON-safe values for audit before/after states.
    data: dict[str, Any] = {}
    for attr in inspect(type(row)).column_attrs:
        value = getattr(row, attr.key)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        data[attr.key] = value
    return data


register_resource("customers", Customer, redact_fields={"portal_password_hash"})
register_resource("workorders", WorkOrder)
