from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

from sqlalchemy import and_, false, or_, true
from sqlalchemy.sql.elements import ColumnElement

from tenantguard.core.errors import InvalidAttributeContext


@dataclass(frozen=True)
class Always:
    pass


@dataclass(frozen=True)
class Never:
    pass


@dataclass(frozen=True)
class TenantEq:
    tenant_id: str


@dataclass(frozen=True)
class AttrEq:
    field: str
    value: Any


@dataclass(frozen=True)
class AttrIn:
    field: str
    values: tuple[Any, ...]


@dataclass(frozen=True)
class AllOf:
    items: tuple["Predicate", ...]


@dataclass(frozen=True)
class AnyOf:
    items: tuple["Predicate", ...]


Predicate = Union[Always, Never, TenantEq, AttrEq, AttrIn, AllOf, AnyOf]

ALWAYS = Always()
NEVER = Never()


def all_of(*items: Predicate) -> Predicate:
    # Fold constants so trivially true/false branches never reach the query.
    kept: list[Predicate] = []
    for item in items:
        if isinstance(item, Never):
            return NEVER
        if isinstance(item, Always):
            continue
        kept.append(item)
    if not kept:
        return ALWAYS
    if len(kept) == 1:
        return kept[0]
    return AllOf(tuple(kept))


def any_of(*items: Predicate) -> Predicate:
    kept: list[Predicate] = []
    for item in items:
        if isinstance(item, Always):
            return ALWAYS
        if isinstance(item, Never):
            continue
        kept.append(item)
    if not kept:
        return NEVER
    if len(kept) == 1:
        return kept[0]
    return AnyOf(tuple(kept))


def evaluate(predicate: Predicate, resource: Mapping[str, Any]) -> bool:
    # Evaluate against a loaded row snapshot; missing fields never match.
    if isinstance(predicate, Always):
        return True
    if isinstance(predicate, Never):
        return False
    if isinstance(predicate, TenantEq):
        return resource.get("tenant_id") == predicate.tenant_id
    if isinstance(predicate, AttrEq):
        return predicate.field in resource and resource[predicate.field] == predicate.value
    if isinstance(predicate, AttrIn):
        return predicate.field in resource and resource[predicate.field] in predicate.values
    if isinstance(predicate, AllOf):
        return all(evaluate(item, resource) for item in predicate.items)
    if isinstance(predicate, AnyOf):
        return any(evaluate(item, resource) for item in predicate.items)
    raise TypeError(f"Unsupported predicate: {predicate!r}")


def _column(model, field: str) -> ColumnElement:
    column = getattr(model, field, None)
    if column is None:
        raise InvalidAttributeContext(f"{model.__name__} has no field {field}")
    return column


def to_clause(predicate: Predicate, model) -> ColumnElement[bool]:
    # Compile into a SQLAlchemy clause for list queries against the resource model.
    if isinstance(predicate, Always):
        return true()
    if isinstance(predicate, Never):
        return false()
    if isinstance(predicate, TenantEq):
        return _column(model, "tenant_id") == predicate.tenant_id
    if isinstance(predicate, AttrEq):
        column = _column(model, predicate.field)
        if predicate.value is None:
            return column.is_(None)
        return column == predicate.value
    if isinstance(predicate, AttrIn):
        if not predicate.values:
            return false()
        return _column(model, predicate.field).in_(predicate.values)
    if isinstance(predicate, AllOf):
        return and_(*(to_clause(item, model) for item in predicate.items))
    if isinstance(predicate, AnyOf):
        return or_(*(to_clause(item, model) for item in predicate.items))
    raise TypeError(f"Unsupported predicate: {predicate!r}")


def describe(predicate: Predicate) -> str:
    # Compact, stable rendering for logs and decision traces.
    if isinstance(predicate, Always):
        return "true"
    if isinstance(predicate, Never):
        return "false"
    if isinstance(predicate, TenantEq):
        return f"tenant_id={predicate.tenant_id}"
    if isinstance(predicate, AttrEq):
        return f"{predicate.field}={predicate.value}"
    if isinstance(predicate, AttrIn):
        return f"{predicate.field} in {list(predicate.values)}"
    if isinstance(predicate, AllOf):
        return "(" + " AND ".join(describe(item) for item in predicate.items) + ")"
    if isinstance(predicate, AnyOf):
        return "(" + " OR ".join(describe(item) for item in predicate.items) + ")"
    raise TypeError(f"Unsupported predicate: {predicate!r}")
